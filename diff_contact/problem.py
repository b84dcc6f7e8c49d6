""" SAP接触问题容器（SapContactProblem），核心功能包括：
clique管理：逐个添加clique（动力学矩阵A + 自由运动速度v*），为每个clique分配连续的索引与速度区间；
约束管理：添加作用在已有clique上的约束，校验clique索引和雅可比块列数，并为约束分配索引；
冻结与建图：finalize()冻结问题并构建ContactProblemGraph，冻结后任何修改都会抛出RuntimeError；
Delassus对角近似：为每个约束计算 wi = ‖Σc J_ic·A_c⁻¹·J_icᵀ‖_F / n_i，用于构造约束的正则化与偏置速度。 """
from typing import List

import torch

from diff_contact.constraints.base import SapConstraint
from diff_contact.contact_problem_graph import ContactProblemGraph
from diff_contact.utils.sys_utils import get_logger


class SapContactProblem(object):
    """SAP接触问题：clique动力学数据 + 约束列表，冻结后只读"""

    def __init__(self, time_step, A=None, v_star=None, logger=None):
        """
        Args:
            time_step (float): 时间步长dt（>0）
            A (list/None): 可选，初始clique的动力学矩阵列表
            v_star (list/torch.Tensor/None): 可选，初始clique的自由运动速度（列表，或按clique顺序拼接的向量）
            logger: 日志器（None使用默认logger）
        """
        if time_step <= 0:
            raise ValueError(f"time_step must be positive, got {time_step}.")
        self._time_step = time_step
        self.logger = logger if logger is not None else get_logger()

        self._A: List[torch.Tensor] = []  # 每个clique的动力学矩阵
        self._v_star: List[torch.Tensor] = []  # 每个clique的自由运动速度
        self._velocity_starts: List[int] = []  # 每个clique在完整速度向量中的起始位置
        self._num_velocities = 0
        self._constraints: List[SapConstraint] = []
        self._graph = None
        self._finalized = False

        if (A is None) != (v_star is None):
            raise ValueError("A and v_star must be provided together.")
        if A is not None:
            if isinstance(v_star, torch.Tensor) and v_star.dim() == 1:
                sizes = [torch.as_tensor(Ac).shape[0] for Ac in A]
                if sum(sizes) != v_star.shape[0]:
                    raise ValueError(
                        f"v_star has {v_star.shape[0]} entries, but the cliques have {sum(sizes)} velocities.")
                v_star = list(torch.split(v_star, sizes))
            if len(A) != len(v_star):
                raise ValueError(f"Got {len(A)} dynamics matrices but {len(v_star)} free-motion velocities.")
            for Ac, vc in zip(A, v_star):
                self.add_clique(Ac, vc)

    def _check_mutable(self):
        if self._finalized:
            raise RuntimeError("The problem is finalized and can no longer be modified.")

    def add_clique(self, A, v_star):
        """
        添加一个clique
        Args:
            A: 动力学矩阵（方阵，对称半正定），shape=[nv, nv]
            v_star: 自由运动速度，shape=[nv]
        Returns:
            int: clique索引
        Raises:
            ValueError: 尺寸不匹配或A不对称
            RuntimeError: 问题已冻结
        """
        self._check_mutable()
        A = torch.as_tensor(A)
        v_star = torch.as_tensor(v_star, dtype=A.dtype, device=A.device)
        if A.dim() != 2 or A.shape[0] != A.shape[1]:
            raise ValueError(f"The dynamics matrix must be square, got shape {tuple(A.shape)}.")
        if A.shape[0] == 0:
            raise ValueError("A clique must have at least one velocity.")
        if v_star.dim() != 1 or v_star.shape[0] != A.shape[0]:
            raise ValueError(
                f"v_star must be a vector of size {A.shape[0]}, got shape {tuple(v_star.shape)}.")
        tolerance = 1.0e3 * torch.finfo(A.dtype).eps * max(A.detach().abs().max().item(), 1.0)
        if (A.detach() - A.detach().T).abs().max().item() > tolerance:
            raise ValueError("The dynamics matrix must be symmetric.")

        clique = len(self._A)
        self._A.append(A)
        self._v_star.append(v_star)
        self._velocity_starts.append(self._num_velocities)
        self._num_velocities += A.shape[0]
        return clique

    def add_constraint(self, constraint: SapConstraint):
        """
        添加约束
        Returns:
            int: 约束索引
        Raises:
            ValueError: clique索引越界，或雅可比块列数与clique自由度数不一致
            RuntimeError: 问题已冻结
        """
        self._check_mutable()
        cliques = [constraint.first_clique()]
        jacobians = [constraint.first_clique_jacobian()]
        if constraint.second_clique() is not None:
            cliques.append(constraint.second_clique())
            jacobians.append(constraint.second_clique_jacobian())
        for c, J in zip(cliques, jacobians):
            if c < 0 or c >= self.num_cliques():
                raise ValueError(
                    f"The constraint references clique {c}, but only {self.num_cliques()} cliques exist.")
            if J.shape[1] != self.num_velocities(c):
                raise ValueError(
                    f"The Jacobian block for clique {c} has {J.shape[1]} columns, "
                    f"but the clique has {self.num_velocities(c)} velocities.")

        constraint_id = len(self._constraints)
        constraint.set_id(constraint_id)
        self._constraints.append(constraint)
        return constraint_id

    def finalize(self):
        """冻结问题并构建接触问题图（重复调用无副作用）"""
        if self._graph is None:
            self._finalized = True
            self._graph = ContactProblemGraph.build(self.num_cliques(), self._constraints)
            self.logger.debug(
                f"SapContactProblem: {self.num_cliques()} cliques, {self.num_velocities()} velocities, "
                f"{self.num_constraints()} constraints, {self.num_constraint_equations()} equations, "
                f"{self._graph.num_edges()} graph edges.")
        return self

    def graph(self):
        """接触问题图（首次访问时构建，同时冻结问题）"""
        return self.finalize()._graph

    def is_finalized(self):
        return self._finalized

    def time_step(self):
        return self._time_step

    def num_cliques(self):
        return len(self._A)

    def num_velocities(self, clique=None):
        """clique为None时返回总速度数，否则返回该clique的自由度数"""
        if clique is None:
            return self._num_velocities
        return self._A[clique].shape[0]

    def velocity_start(self, clique):
        return self._velocity_starts[clique]

    def num_constraints(self):
        return len(self._constraints)

    def num_constraint_equations(self):
        return sum(c.num_constraint_equations() for c in self._constraints)

    def get_constraint(self, i):
        return self._constraints[i]

    def constraints(self):
        return list(self._constraints)

    def dynamics_matrix(self):
        """每个clique的动力学矩阵列表"""
        return list(self._A)

    def v_star(self):
        """按clique顺序拼接的完整自由运动速度"""
        if len(self._v_star) == 0:
            return torch.zeros(0)
        return torch.cat(self._v_star)

    def clique_v_star(self, clique):
        return self._v_star[clique]

    def calc_delassus_diagonal(self):
        """
        Delassus算子的对角块近似：对第i个约束
            W_ii = Σc J_ic·A_c⁻¹·J_icᵀ，wi = ‖W_ii‖_F / n_i
        Returns:
            torch.Tensor: shape=[num_constraints]
        """
        # 每个clique只分解一次
        factorizations = {}
        wi = []
        for constraint in self._constraints:
            cliques = [constraint.first_clique()]
            jacobians = [constraint.first_clique_jacobian()]
            if constraint.second_clique() is not None:
                cliques.append(constraint.second_clique())
                jacobians.append(constraint.second_clique_jacobian())
            W = 0
            for c, J in zip(cliques, jacobians):
                if c not in factorizations:
                    factorizations[c] = torch.linalg.cholesky(self._A[c])
                AinvJT = torch.cholesky_solve(J.T.to(self._A[c]), factorizations[c])
                W = W + J.to(AinvJT) @ AinvJT
            wi.append(torch.linalg.matrix_norm(W) / constraint.num_constraint_equations())
        if len(wi) == 0:
            return torch.zeros(0)
        return torch.stack(wi)
