# 库仑摩擦锥约束（SapFrictionConeConstraint）的具体实现类，继承自SapConstraint抽象基类。
# 每个接触点对应3个约束方程：两个切向(t1, t2) + 一个法向(n)，约束冲量需位于摩擦锥 {‖γt‖ ≤ μ·γn, γn ≥ 0} 内。
# 投影在R加权空间 z = R^{1/2}·y 中完成：该空间内摩擦锥系数为 μ̃ = μ·sqrt(Rt/Rn)，半顶角 α = atan(μ̃)。
# 记 ρ = ‖z‖、θ为z与法向轴的夹角、φ = θ - α，势函数 Φ(z) = ½·ρ²·M(φ)，投影 x = ∇Φ。
# 精确投影对应 M = 1（粘滞，φ ≤ 0）、M = cos²φ（滑动）、M = 0（分离，φ ≥ π/2）。
# 记 ℓ = -M'/M：x由z向法向轴旋转了 atan(ℓ/2)，x位于锥内当且仅当 tanφ ≤ ℓ/2 ≤ tanθ（且M ≥ 0）。
# 两个过渡带内ℓ都只在这一区间内取值：
#   粘滞/滑动边界 φ ∈ [-w_l, w_l]：ℓ/2 = tanφ + p(φ)，p为非负的三次Hermite多项式，w_l = min(w, α/2)；
#   滑动/分离边界 φ ∈ [π/2 - w_u, π/2]：M再乘以衰减因子χ（χ单调，χ(π/2) = 0），w_u = min(w, α)。
# 于是M处处C2，投影 γ = R^{-1/2}·∇Φ 与导数 dP/dy = R^{-1/2}·∇²Φ·R^{1/2} 连续，且γ始终在锥内；
# 代价取Φ本身，关于vc的梯度恰为 -γ。过渡带之外：粘滞区精确；滑动区方向精确，大小乘以常数 K = 1 - O(w_l²)。
# μ = 0时可行集退化为法向射线，直接取 x = (0, 0, max(zn, 0))。
import math
from typing import NamedTuple

import torch

from diff_contact.constraints.base import Constraint_Type, SapConstraint


class Friction_Cone_Parameters(NamedTuple):
    """
    摩擦锥约束参数（每个约束实例固定）
    字段说明：
        mu: 摩擦系数（≥0）
        stiffness: 法向接触刚度k（>0）
        dissipation_time_scale: 耗散时间常数τd（≥0）
        beta: 法向正则化下限系数（近刚性接触时 Rn ≥ β²/(4π²)·wi）
        sigma: 切向正则化系数（Rt = σ·wi）
        transition_width: 各区间边界处的角度光滑宽度（弧度，0表示精确投影）
    """
    mu: float
    stiffness: float
    dissipation_time_scale: float
    beta: float = 1.0
    sigma: float = 1.0e-3
    transition_width: float = 0.02

    def validate(self):
        if float(self.mu) < 0:
            raise ValueError(f"Friction coefficient must be non-negative, got {float(self.mu)}.")
        if float(self.stiffness) <= 0:
            raise ValueError(f"Stiffness must be positive, got {float(self.stiffness)}.")
        if float(self.dissipation_time_scale) < 0:
            raise ValueError(
                f"Dissipation time scale must be non-negative, got {float(self.dissipation_time_scale)}.")
        if float(self.beta) <= 0:
            raise ValueError(f"beta must be positive, got {float(self.beta)}.")
        if float(self.sigma) <= 0:
            raise ValueError(f"sigma must be positive, got {float(self.sigma)}.")
        if not 0 <= float(self.transition_width) < math.pi / 8:
            raise ValueError(
                f"transition_width must lie in [0, pi/8), got {float(self.transition_width)}.")
        return self


def _hermite_offset(phi, width):
    """
    粘滞/滑动过渡带内的非负偏移 p(φ) 及其导数、从 -width 起的积分
    p(-w) = tan(w)、p'(-w) = -sec²(w)、p(w) = p'(w) = 0，使 tanφ + p 在两端C1衔接 0 与 tanφ
    Returns:
        tuple: (p, dp/dφ, ∫p)
    """
    T = torch.tan(width)
    S = 1.0 + T * T
    s = (phi + width) / (2.0 * width)
    h00 = (1.0 - s) ** 2 * (1.0 + 2.0 * s)
    h10 = s * (1.0 - s) ** 2
    p = T * h00 - 2.0 * width * S * h10
    dp = (T * (6.0 * s * s - 6.0 * s) - 2.0 * width * S * (3.0 * s * s - 4.0 * s + 1.0)) / (2.0 * width)
    H00 = 0.5 * s ** 4 - s ** 3 + s
    H10 = 0.25 * s ** 4 - 2.0 * s ** 3 / 3.0 + 0.5 * s * s
    P = 2.0 * width * (T * H00 - 2.0 * width * S * H10)
    return p, dp, P


def _slide_scale(width):
    """滑动区 M = K·cos²φ 中的常数K（width = 0时为1）"""
    if float(width) <= 0:
        return torch.ones_like(width)
    T = torch.tan(width)
    P = width * T - width * width * (1.0 + T * T) / 3.0
    return torch.exp(-2.0 * P) / torch.cos(width) ** 2


def _cone_profile(phi, lower_width, upper_width):
    """
    角度剖面M(φ)及其一、二阶导数，要求 -lower_width < φ < π/2
    Returns:
        tuple: (M, M', M'')
    """
    if phi < lower_width:
        p, dp, P = _hermite_offset(phi, lower_width)
        q = torch.tan(phi) + p
        dq = 1.0 + torch.tan(phi) ** 2 + dp
        M = torch.cos(phi) ** 2 / torch.cos(lower_width) ** 2 * torch.exp(-2.0 * P)
        return M, -2.0 * q * M, (4.0 * q * q - 2.0 * dq) * M

    K = _slide_scale(lower_width)
    c2 = torch.cos(phi) ** 2
    dc2 = -torch.sin(2.0 * phi)
    d2c2 = -2.0 * torch.cos(2.0 * phi)
    if phi <= 0.5 * math.pi - upper_width:
        return K * c2, K * dc2, K * d2c2

    # 分离边界：χ(t) = 1 - (1-t)³，t = (π/2 - φ)/w_u
    t = (0.5 * math.pi - phi) / upper_width
    chi = 1.0 - (1.0 - t) ** 3
    dchi = -3.0 * (1.0 - t) ** 2 / upper_width
    d2chi = -6.0 * (1.0 - t) / (upper_width * upper_width)
    M = K * c2 * chi
    dM = K * (dc2 * chi + c2 * dchi)
    d2M = K * (d2c2 * chi + 2.0 * dc2 * dchi + c2 * d2chi)
    return M, dM, d2M


def _safe_norm(x):
    """零向量处梯度为零的范数（避免autograd在0处产生NaN）"""
    squared = torch.dot(x, x)
    if squared > 0:
        return torch.sqrt(squared)
    return squared


class SapFrictionConeConstraint(SapConstraint):
    """
    库仑摩擦锥约束：一个接触点，法向 + 两个切向
    约束函数 g = (0, 0, φ0)，φ0为接触点处的有符号距离（穿透时为负）
    约束速度 vc = (vt1, vt2, vn)，vn > 0 表示两物体分离
    """

    def __init__(self, clique0, J0, phi0, parameters, clique1=None, J1=None):
        """
        Args:
            clique0 (int): 第一个clique索引
            J0: 第一个clique的雅可比块，shape=[3, nv0]
            phi0: 有符号距离
            parameters (Friction_Cone_Parameters): 摩擦锥参数
            clique1 (int/None): 第二个clique索引（单clique接触，如与地面接触，为None）
            J1: 第二个clique的雅可比块，shape=[3, nv1]
        """
        J0 = torch.as_tensor(J0)
        phi0 = torch.as_tensor(phi0, dtype=J0.dtype, device=J0.device)
        if phi0.dim() != 0:
            raise ValueError(f"phi0 must be a scalar, got shape {tuple(phi0.shape)}.")
        if J0.dim() != 2 or J0.shape[0] != 3:
            raise ValueError(f"A friction cone constraint needs a 3-row Jacobian, got shape {tuple(J0.shape)}.")
        g = torch.stack([torch.zeros_like(phi0), torch.zeros_like(phi0), phi0])
        super().__init__(clique0, J0, g, clique1=clique1, J1=J1)
        self.parameters = Friction_Cone_Parameters(*parameters).validate()
        self.phi0 = phi0

    def constraint_type(self):
        return Constraint_Type.FRICTION_CONE

    def calc_bias_term(self, time_step, wi):
        """
        偏置速度：切向为0，法向 vn_hat = -φ0 / (dt + τd)
        """
        taud = self.parameters.dissipation_time_scale
        vn_hat = -self.phi0 / (time_step + taud)
        return torch.stack([torch.zeros_like(vn_hat), torch.zeros_like(vn_hat), vn_hat])

    def calc_diagonal_regularization(self, time_step, wi):
        """
        对角正则化 R = (Rt, Rt, Rn)
            Rt = σ·wi
            Rn = max(β²/(4π²)·wi, 1/(dt·k·(dt+τd)))
        """
        wi = torch.as_tensor(wi, dtype=self.phi0.dtype, device=self.phi0.device)
        k = self.parameters.stiffness
        taud = self.parameters.dissipation_time_scale
        beta = self.parameters.beta
        sigma = self.parameters.sigma
        # 近刚性下限：保证正则化不小于Delassus对角近似所决定的量级
        Rn_rigid = beta * beta / (4.0 * math.pi * math.pi) * wi
        Rn_compliant = torch.as_tensor(1.0 / (time_step * k * (time_step + taud)), dtype=wi.dtype,
                                       device=wi.device)
        Rn = torch.maximum(Rn_rigid, Rn_compliant)
        Rt = sigma * wi
        return torch.stack([Rt, Rt, Rn])

    def _cone_angles(self, R):
        """返回R加权空间中的摩擦锥半顶角α及粘滞/滑动、滑动/分离两个过渡带宽度"""
        mu = torch.as_tensor(self.parameters.mu, dtype=R.dtype, device=R.device)
        mu_tilde = mu * torch.sqrt(R[0] / R[2])
        alpha = torch.atan(mu_tilde)
        width = self.parameters.transition_width
        lower_width = torch.clamp(0.5 * alpha, max=width)
        upper_width = torch.clamp(alpha, max=width)
        return alpha, lower_width, upper_width

    @staticmethod
    def _unilateral(z, rho_squared, with_hessian):
        """μ = 0：x = (0, 0, max(zn, 0))，切向分量恒为零"""
        zn = z[2]
        if zn > 0:
            x = torch.cat([0.0 * z[:2], zn.reshape(1)])
            H = torch.diag(torch.tensor([0.0, 0.0, 1.0], dtype=z.dtype, device=z.device)) if with_hessian else None
            return 0.5 * zn * zn, x, H
        return 0.0 * rho_squared, 0.0 * z, (z.new_zeros(3, 3) if with_hessian else None)

    def _evaluate(self, y, R, with_hessian):
        """
        在z = R^{1/2}·y处计算势函数Φ、梯度x = ∇Φ及（可选）Hessian
        Returns:
            tuple: (Φ, x, Hessian或None)
        """
        sqrt_R = torch.sqrt(R)
        z = sqrt_R * y
        zt = z[:2]
        zn = z[2]
        r = _safe_norm(zt)
        rho_squared = r * r + zn * zn

        # 极小模长：按分离处理（避免切向方向归一化时除零）；0·z保持计算图连通且梯度为零
        if rho_squared <= torch.finfo(z.dtype).tiny:
            return 0.0 * rho_squared, 0.0 * z, (z.new_zeros(3, 3) if with_hessian else None)
        if float(self.parameters.mu) == 0:
            return self._unilateral(z, rho_squared, with_hessian)

        alpha, lower_width, upper_width = self._cone_angles(R)
        theta = torch.atan2(r, zn)
        phi = theta - alpha

        # 粘滞：冲量已在锥内（且离边界足够远），原样通过
        if phi <= -lower_width:
            return 0.5 * rho_squared, z, (torch.eye(3, dtype=z.dtype, device=z.device) if with_hessian else None)
        # 分离：冲量为零
        if phi >= 0.5 * math.pi:
            return 0.0 * rho_squared, 0.0 * z, (z.new_zeros(3, 3) if with_hessian else None)

        # 滑动及过渡带（此时 0 < θ < π，r > 0）
        M, dM, d2M = _cone_profile(phi, lower_width, upper_width)
        rho = torch.sqrt(rho_squared)
        sin_t = r / rho
        cos_t = zn / rho
        # x在(r, n)平面内的分量：x_r = ρ·g(θ)，x_n = ρ·h(θ)；切向 x_t = (g/sinθ)·z_t
        g = M * sin_t + 0.5 * dM * cos_t
        h = M * cos_t - 0.5 * dM * sin_t
        c_perp = M + 0.5 * dM * cos_t / sin_t
        xt = c_perp * zt
        xn = rho * h
        x = torch.cat([xt, xn.reshape(1)])
        cost = 0.5 * rho_squared * M
        if not with_hessian:
            return cost, x, None

        dg = 0.5 * dM * sin_t + M * cos_t + 0.5 * d2M * cos_t
        dh = 0.5 * dM * cos_t - M * sin_t - 0.5 * d2M * sin_t
        phi_rr = sin_t * g + cos_t * dg
        phi_rn = cos_t * g - sin_t * dg
        phi_nn = cos_t * h - sin_t * dh
        that = zt / r
        P = torch.outer(that, that)
        I2 = torch.eye(2, dtype=z.dtype, device=z.device)
        Htt = c_perp * I2 + (phi_rr - c_perp) * P
        Htn = (phi_rn * that).reshape(2, 1)
        H = torch.cat([
            torch.cat([Htt, Htn], dim=1),
            torch.cat([Htn.T, phi_nn.reshape(1, 1)], dim=1),
        ], dim=0)
        return cost, x, H

    def project(self, y, R):
        """
        投影：γ = R^{-1/2}·∇Φ(R^{1/2}·y)，γ始终位于摩擦锥内
        区间（远离过渡带时）：
            粘滞：冲量在锥内，γ = y
            滑动：保持切向方向，‖γt‖ = μ·γn
            分离：γ = 0
        μ = 0 时退化为纯法向单边约束（切向冲量恒为零）
        Returns:
            tuple: (gamma, dPdy)
        """
        y = torch.as_tensor(y)
        R = torch.as_tensor(R, dtype=y.dtype, device=y.device)
        _, x, H = self._evaluate(y, R, with_hessian=True)
        sqrt_R = torch.sqrt(R)
        gamma = x / sqrt_R
        dPdy = H * sqrt_R.unsqueeze(0) / sqrt_R.unsqueeze(1)
        return gamma, dPdy

    def calc_impulse(self, y, R):
        """仅计算投影冲量（不计算导数）"""
        y = torch.as_tensor(y)
        R = torch.as_tensor(R, dtype=y.dtype, device=y.device)
        _, x, _ = self._evaluate(y, R, with_hessian=False)
        return x / torch.sqrt(R)

    def calc_cost(self, y, R):
        """
        正则化代价 Φ(R^{1/2}·y)；粘滞区内等于 ½·γ^T·R·γ
        """
        y = torch.as_tensor(y)
        R = torch.as_tensor(R, dtype=y.dtype, device=y.device)
        cost, _, _ = self._evaluate(y, R, with_hessian=False)
        return cost
