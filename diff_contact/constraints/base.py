""" SAP约束的抽象基类定义，包含两部分核心内容：
Constraint_Type枚举类：列举全部具体约束类型（集合很小且封闭），为约束提供类型标识；
SapConstraint抽象基类：封装约束的通用属性（关联的clique、每个clique的雅可比块、约束函数值）与接口
（偏置速度、对角正则化、投影及其导数、正则化代价），是所有具体约束（如摩擦锥约束）的父类。
所有数值接口都在torch张量上实现，标量类型可以是float32/float64，也可以携带autograd或前向模式对偶分量，
因此同一套代码既能做普通求值，也能做可微求值。 """
from abc import ABCMeta, abstractmethod
import copy
from enum import Enum

import torch


class Constraint_Type(Enum):
    """
    约束类型枚举
    """
    # 库仑摩擦锥约束：每个接触点一个法向 + 两个切向方程
    FRICTION_CONE = 0


class SapConstraint(metaclass=ABCMeta):
    """
    SAP约束抽象基类
    一个约束作用于一个或两个clique；约束速度 vc = J0·v0 + J1·v1，
    约束冲量gamma通过project()由未投影冲量y得到
    """

    def __init__(self, clique0, J0, g, clique1=None, J1=None):
        """
        Args:
            clique0 (int): 第一个clique索引
            J0 (torch.Tensor): 第一个clique的雅可比块，shape=[num_equations, clique0的自由度数]
            g (torch.Tensor): 约束函数值，shape=[num_equations]
            clique1 (int/None): 第二个clique索引（单clique约束为None）
            J1 (torch.Tensor/None): 第二个clique的雅可比块
        Raises:
            ValueError: 方程数为零、clique索引非法、雅可比块尺寸不匹配
        """
        self.id = None  # 约束在所属问题中的索引（由SapContactProblem.add_constraint设置）
        g = torch.as_tensor(g)
        if g.dim() != 1:
            raise ValueError(f"The constraint function must be a vector, got shape {tuple(g.shape)}.")
        num_equations = g.shape[0]
        if num_equations == 0:
            raise ValueError("A constraint must have at least one equation.")

        J0 = self._check_jacobian(J0, num_equations, "first")
        if clique0 < 0:
            raise ValueError(f"Clique index must be non-negative, got {clique0}.")
        if (clique1 is None) != (J1 is None):
            raise ValueError("The second clique and its Jacobian must be provided together.")
        if clique1 is not None:
            if clique1 < 0:
                raise ValueError(f"Clique index must be non-negative, got {clique1}.")
            if clique1 == clique0:
                raise ValueError(
                    f"A two-clique constraint must reference two different cliques, got {clique0} twice.")
            J1 = self._check_jacobian(J1, num_equations, "second")

        self._clique0 = int(clique0)
        self._clique1 = None if clique1 is None else int(clique1)
        self._J0 = J0
        self._J1 = J1
        self._g = g

    @staticmethod
    def _check_jacobian(J, num_equations, which):
        J = torch.as_tensor(J)
        if J.dim() != 2:
            raise ValueError(f"The {which} clique Jacobian must be a matrix, got shape {tuple(J.shape)}.")
        if J.shape[0] != num_equations:
            raise ValueError(
                f"The {which} clique Jacobian has {J.shape[0]} rows, "
                f"but the constraint has {num_equations} equations.")
        return J

    @abstractmethod
    def constraint_type(self):
        """返回Constraint_Type"""
        pass

    def num_constraint_equations(self):
        return self._g.shape[0]

    def num_cliques(self):
        return 1 if self._clique1 is None else 2

    def first_clique(self):
        return self._clique0

    def second_clique(self):
        """单clique约束返回None"""
        return self._clique1

    def first_clique_jacobian(self):
        return self._J0

    def second_clique_jacobian(self):
        return self._J1

    def J(self):
        """
        返回两个clique的雅可比块 (J0, J1)；单clique约束的J1为None
        """
        return self._J0, self._J1

    def constraint_function(self):
        return self._g

    def set_id(self, id):
        self.id = id

    def calc_constraint_velocity(self, v0, v1=None):
        """
        约束空间速度 vc = J0·v0 + J1·v1
        Args:
            v0: 第一个clique的速度（仅本约束所作用的clique块）
            v1: 第二个clique的速度（单clique约束不传）
        """
        vc = self._J0 @ v0
        if self._clique1 is not None:
            if v1 is None:
                raise ValueError("A two-clique constraint needs the velocity of its second clique.")
            vc = vc + self._J1 @ v1
        return vc

    @abstractmethod
    def calc_bias_term(self, time_step, wi):
        """
        计算偏置速度vhat（约束空间），shape=[num_equations]
        Args:
            time_step: 时间步长
            wi: 本约束的Delassus算子对角近似
        """
        pass

    @abstractmethod
    def calc_diagonal_regularization(self, time_step, wi):
        """
        计算对角正则化R（约束空间，各分量为正），shape=[num_equations]
        """
        pass

    @abstractmethod
    def project(self, y, R):
        """
        把未投影冲量y投影到约束的可行集上（在R加权范数下）
        Args:
            y (torch.Tensor): 未投影冲量，shape=[num_equations]
            R (torch.Tensor): 对角正则化，shape=[num_equations]
        Returns:
            tuple: (gamma, dPdy)
                gamma: 投影后的冲量，shape=[num_equations]
                dPdy: 投影对y的导数，shape=[num_equations, num_equations]
        """
        pass

    def calc_impulse(self, y, R):
        """仅计算投影冲量（子类可跳过导数计算以加速线搜索中的代价求值）"""
        gamma, _ = self.project(y, R)
        return gamma

    def calc_cost(self, y, R):
        """
        本约束对SAP代价的正则化项贡献，关于vc的梯度为-gamma
        默认实现对应精确投影：0.5·gamma^T·R·gamma
        """
        gamma, _ = self.project(y, R)
        return 0.5 * torch.dot(gamma, R * gamma)

    def clone(self):
        return copy.deepcopy(self)

    def __repr__(self):
        cliques = (self._clique0,) if self._clique1 is None else (self._clique0, self._clique1)
        return (f"{type(self).__name__}(cliques={cliques}, "
                f"num_equations={self.num_constraint_equations()})")
