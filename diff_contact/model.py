""" SAP模型（SapModel）：接触问题与外部Newton求解器之间的桥梁。
构造时从已冻结的SapContactProblem导出：
参与clique置换：只保留至少受一个约束作用的clique（其余clique不受约束力，速度就是自由运动速度v*，不进入优化）；
速度置换：把clique置换展开到速度分量级别，用于完整速度 ↔ 参与速度之间的转换；
约束集合：在参与clique的压缩索引空间上组装SapConstraintBundle。
对外提供SAP代价 ℓ(v) = ½(v-v*)ᵀA(v-v*) + Σ_i ℓ_i(y_i(v)) 及其梯度 A(v-v*) - Jᵀγ、Hessian A + JᵀGJ 的求值接口，
所有求值都是关于输入速度v的纯函数，同一模型可被多个线搜索试探点并发调用。 """
from typing import List, NamedTuple, Optional

import torch

from diff_contact.solver.bundle import SapConstraintBundle
from diff_contact.utils.sys_utils import get_logger


class Sap_Cost_Evaluation(NamedTuple):
    """
    一次代价求值的全部结果（参与速度空间 / 边顺序约束空间）
    字段说明：
        cost: 总代价
        momentum_cost: ½(v-v*)ᵀA(v-v*)
        regularizer_cost: 约束正则化代价之和
        gradient: 代价梯度 A(v-v*) - Jᵀγ
        vc: 约束速度 J·v
        y: 未投影冲量
        gamma: 投影后的冲量
        dPdy: 每个约束的投影导数块（未请求导数时为None）
    """
    cost: torch.Tensor
    momentum_cost: torch.Tensor
    regularizer_cost: torch.Tensor
    gradient: torch.Tensor
    vc: torch.Tensor
    y: torch.Tensor
    gamma: torch.Tensor
    dPdy: Optional[List[torch.Tensor]]


class SapModel(object):
    """SAP模型：参与clique压缩空间上的代价/梯度/Hessian求值"""

    def __init__(self, problem, logger=None):
        """
        Args:
            problem (SapContactProblem): 接触问题（若未冻结会被冻结）
            logger: 日志器（None使用默认logger）
        """
        self.logger = logger if logger is not None else get_logger()
        self._problem = problem.finalize()
        graph = problem.graph()

        self._cliques_permutation = graph.make_cliques_permutation()
        clique_sizes = [problem.num_velocities(c) for c in range(problem.num_cliques())]
        self._velocities_permutation = self._cliques_permutation.expand(clique_sizes)

        self._delassus_diagonal = problem.calc_delassus_diagonal()
        self._bundle = SapConstraintBundle(problem, self._delassus_diagonal, self._cliques_permutation)

        all_A = problem.dynamics_matrix()
        self._A = [all_A[self._cliques_permutation.domain_index(k)]
                   for k in range(self._cliques_permutation.permuted_domain_size())]
        self._v_star = self._velocities_permutation.apply(problem.v_star())
        self._p_star = self.multiply_by_dynamics_matrix(self._v_star)

        self.logger.debug(
            f"SapModel: {self.num_participating_cliques()}/{self.num_cliques()} participating cliques, "
            f"{self.num_velocities()} velocities, {self.num_constraints()} constraints, "
            f"{self.num_constraint_equations()} equations, {self._bundle.J().num_blocks()} Jacobian blocks.")

    def num_cliques(self):
        return self._problem.num_cliques()

    def num_participating_cliques(self):
        return self._cliques_permutation.permuted_domain_size()

    def num_velocities(self):
        """参与速度的维度"""
        return self._velocities_permutation.permuted_domain_size()

    def num_constraints(self):
        return self._bundle.num_constraints()

    def num_constraint_equations(self):
        return self._bundle.num_constraint_equations()

    def time_step(self):
        return self._problem.time_step()

    def problem(self):
        return self._problem

    def cliques_permutation(self):
        return self._cliques_permutation

    def velocities_permutation(self):
        return self._velocities_permutation

    def dynamics_matrix(self):
        """参与clique的动力学矩阵列表（压缩顺序）"""
        return list(self._A)

    def v_star(self):
        return self._v_star

    def p_star(self):
        """自由运动动量 A·v*"""
        return self._p_star

    def delassus_diagonal(self):
        return self._delassus_diagonal

    def constraints_bundle(self):
        return self._bundle

    def multiply_by_dynamics_matrix(self, v):
        """A·v（逐参与clique的块对角乘法）"""
        if v.shape[0] != self.num_velocities():
            raise ValueError(f"Expected {self.num_velocities()} velocities, got {v.shape[0]}.")
        segments = []
        start = 0
        for A in self._A:
            n = A.shape[0]
            segments.append(A.to(v) @ v[start:start + n])
            start += n
        if len(segments) == 0:
            return v.new_zeros(0)
        return torch.cat(segments)

    def make_participating_velocities(self, v_full):
        """完整速度（问题的clique顺序）→ 参与速度"""
        return self._velocities_permutation.apply(v_full)

    def expand_velocities(self, v):
        """参与速度 → 完整速度，不参与的clique取自由运动速度v*"""
        v_star_full = self._problem.v_star().to(v)
        return self._velocities_permutation.apply_inverse(v, v_star_full)

    def calc_constraint_velocities(self, v):
        return self._bundle.calc_constraint_velocities(v)

    def calc_momentum_gain(self, v):
        """A·(v - v*)"""
        return self.multiply_by_dynamics_matrix(v - self._v_star.to(v))

    def calc_momentum_cost(self, v):
        """½(v - v*)ᵀA(v - v*)"""
        dv = v - self._v_star.to(v)
        return 0.5 * torch.dot(dv, self.multiply_by_dynamics_matrix(dv))

    def calc_cost_and_gradient(self, v, compute_derivative=True):
        """
        在参与速度v处求值SAP代价与梯度
        Args:
            v (torch.Tensor): 参与速度，shape=[num_velocities]
            compute_derivative (bool): 是否同时计算投影导数（Hessian需要）
        Returns:
            Sap_Cost_Evaluation
        """
        if v.shape[0] != self.num_velocities():
            raise ValueError(f"Expected {self.num_velocities()} velocities, got {v.shape[0]}.")
        momentum_gain = self.calc_momentum_gain(v)
        momentum_cost = 0.5 * torch.dot(v - self._v_star.to(v), momentum_gain)
        vc = self._bundle.calc_constraint_velocities(v)
        y = self._bundle.calc_unprojected_impulses(vc)
        gamma, dPdy = self._bundle.project_impulses(y, compute_derivative=compute_derivative)
        regularizer_cost = self._bundle.calc_regularizer_cost(y)
        gradient = momentum_gain - self._bundle.calc_generalized_impulses(gamma)
        return Sap_Cost_Evaluation(
            cost=momentum_cost + regularizer_cost,
            momentum_cost=momentum_cost,
            regularizer_cost=regularizer_cost,
            gradient=gradient,
            vc=vc,
            y=y,
            gamma=gamma,
            dPdy=dPdy,
        )

    def calc_hessian(self, v, evaluation=None):
        """
        稠密Hessian A + Jᵀ·G·J
        Args:
            v: 参与速度
            evaluation (Sap_Cost_Evaluation/None): 已在v处算好的求值结果（需包含dPdy），可避免重复投影
        """
        if evaluation is None or evaluation.dPdy is None:
            evaluation = self.calc_cost_and_gradient(v, compute_derivative=True)
        G = self._bundle.calc_impulses_hessian_blocks(evaluation.dPdy)
        H = self._bundle.calc_hessian_contribution(G).to(v)
        if len(self._A) > 0:
            H = H + torch.block_diag(*[A.to(v) for A in self._A])
        return H

    def calc_impulses(self, v):
        """约束冲量γ，按问题中的约束方程顺序排列"""
        vc = self._bundle.calc_constraint_velocities(v)
        y = self._bundle.calc_unprojected_impulses(vc)
        gamma, _ = self._bundle.project_impulses(y, compute_derivative=False)
        return self._bundle.equations_permutation().apply_inverse(gamma)

    def calc_generalized_impulses(self, v):
        """参与速度空间中的广义冲量 Jᵀ·γ"""
        vc = self._bundle.calc_constraint_velocities(v)
        y = self._bundle.calc_unprojected_impulses(vc)
        gamma, _ = self._bundle.project_impulses(y, compute_derivative=False)
        return self._bundle.calc_generalized_impulses(gamma)

    def __repr__(self):
        return (f"SapModel(num_velocities={self.num_velocities()}, "
                f"num_constraints={self.num_constraints()})")
