""" Builder类是SAP接触问题的"组装核心"：
参数解析：把配置字典（sys_args / sap_args）整理为Namespace，并补齐默认值；
可复现性：固定所有随机数种子，统一数值类型与计算设备；
问题组装：创建SapContactProblem，添加clique（质量矩阵 + 自由运动速度）与点接触摩擦锥约束，
最终构建SapModel供外部Newton求解器（如scripts/run.py中的演示循环）使用。 """
import os
import random

import numpy as np
import torch

from diff_contact.constraints.friction_cone_constraint import Friction_Cone_Parameters, SapFrictionConeConstraint
from diff_contact.model import SapModel
from diff_contact.problem import SapContactProblem
from diff_contact.solver.util import contact_frame, contact_jacobian
from diff_contact.utils.cfg_utils import get_sap_args, get_sys_args


class Builder():
    """
    SAP接触问题构建器
    作用：统一创建问题、clique、接触约束和模型，并管理数值类型/设备/默认摩擦锥参数
    """
    def __init__(self, all_args, logger=None):
        """
        Args:
            all_args: 全局配置字典（包含sys_args、sap_args）
            logger: 传给问题与模型的日志器（None使用默认logger）
        """
        self.sys_args = get_sys_args(all_args.get('sys_args', {}))
        self.sap_args = get_sap_args(all_args.get('sap_args', {}))
        self.logger = logger

        self.dtype = getattr(torch, self.sys_args.dtype)
        self.device = torch.device(self.sys_args.device)
        self.set_seed(self.sys_args.seed)

    def set_seed(self, seed):
        """
        固定所有随机数生成器的种子（Python/numpy/torch/GPU）
        """
        os.environ['PYTHONHASHSEED'] = str(seed)
        random.seed(seed)
        np.random.seed(seed)
        torch.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)
        torch.backends.cudnn.benchmark = False
        torch.backends.cudnn.deterministic = True

    def tensor(self, data):
        """按配置的数值类型与设备创建张量"""
        return torch.as_tensor(data, dtype=self.dtype, device=self.device)

    def build_friction_cone_parameters(self, **overrides):
        """
        由sap_args中的默认值构造摩擦锥参数，overrides可覆盖任意字段（如mu=0.0）
        Returns:
            Friction_Cone_Parameters
        """
        values = dict(
            mu=self.sap_args.mu,
            stiffness=self.sap_args.stiffness,
            dissipation_time_scale=self.sap_args.dissipation_time_scale,
            beta=self.sap_args.beta,
            sigma=self.sap_args.sigma,
            transition_width=self.sap_args.transition_width,
        )
        for k, v in overrides.items():
            if k not in values:
                raise ValueError(f"Unknown friction cone parameter: {k}")
            values[k] = v
        return Friction_Cone_Parameters(**values).validate()

    def build_problem(self, time_step=None):
        """创建空的接触问题（默认使用sap_args.time_step）"""
        if time_step is None:
            time_step = self.sap_args.time_step
        return SapContactProblem(time_step, logger=self.logger)

    def add_clique(self, problem, mass, v_star):
        """
        添加clique
        Args:
            mass: 动力学矩阵；标量表示单自由度质量，向量表示对角质量矩阵
            v_star: 自由运动速度
        Returns:
            int: clique索引
        """
        A = self.tensor(mass)
        if A.dim() == 0:
            A = A.reshape(1, 1)
        elif A.dim() == 1:
            A = torch.diag(A)
        v_star = self.tensor(v_star).reshape(-1)
        return problem.add_clique(A, v_star)

    def add_point_contact(self, problem, clique0, J0_world, normal, phi0, clique1=None, J1_world=None,
                          parameters=None):
        """
        添加一个点接触（摩擦锥约束）
        接触速度取 vc = R_CW·(vB - vA)，A为clique0一侧、B为clique1一侧，法向由A指向B（vn > 0 表示分离）
        单clique接触（如与固定地面接触）时clique0视为B侧
        Args:
            J0_world / J1_world: 接触点速度关于各clique速度的世界坐标雅可比，shape=[3, nv]
            normal: 接触法向（世界坐标）
            phi0: 有符号距离（穿透为负）
            parameters (Friction_Cone_Parameters/None): None使用默认参数
        Returns:
            int: 约束索引
        """
        if parameters is None:
            parameters = self.build_friction_cone_parameters()
        R_CW = contact_frame(self.tensor(normal))
        phi0 = self.tensor(phi0)
        if clique1 is None:
            J0 = contact_jacobian(R_CW, J0_world)
            constraint = SapFrictionConeConstraint(clique0, J0, phi0, parameters)
        else:
            J0 = -contact_jacobian(R_CW, J0_world)
            J1 = contact_jacobian(R_CW, J1_world)
            constraint = SapFrictionConeConstraint(clique0, J0, phi0, parameters, clique1=clique1, J1=J1)
        return problem.add_constraint(constraint)

    def build_model(self, problem):
        """冻结问题并构建SAP模型"""
        return SapModel(problem.finalize(), logger=self.logger)

    def build_colliding_pair(self, masses, free_velocities, mu=0.0, phi0=0.0):
        """
        演示场景：两个单自由度clique沿法向(z轴)相向运动，由一个摩擦锥约束相连
        Returns:
            tuple: (problem, model)
        """
        problem = self.build_problem()
        c0 = self.add_clique(problem, masses[0], [free_velocities[0]])
        c1 = self.add_clique(problem, masses[1], [free_velocities[1]])
        normal = [0.0, 0.0, 1.0]
        J_world = self.tensor(normal).reshape(3, 1)
        self.add_point_contact(problem, c0, J_world, normal, phi0, clique1=c1, J1_world=J_world,
                               parameters=self.build_friction_cone_parameters(mu=mu))
        return problem, self.build_model(problem)
