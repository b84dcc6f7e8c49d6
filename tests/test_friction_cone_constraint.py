import math

import pytest
import torch
import torch.autograd.forward_ad as fwAD

from diff_contact.constraints.base import Constraint_Type
from diff_contact.constraints.friction_cone_constraint import Friction_Cone_Parameters, SapFrictionConeConstraint

DTYPE = torch.float64


def _constraint(mu=0.5, phi0=0.0, **kwargs):
    parameters = Friction_Cone_Parameters(mu=mu, stiffness=1.0e5, dissipation_time_scale=0.1, **kwargs)
    return SapFrictionConeConstraint(0, torch.eye(3, dtype=DTYPE), phi0, parameters)


def _vec(*values):
    return torch.tensor(values, dtype=DTYPE)


def _cone_point(theta, rho=1.5, direction=0.7):
    """R = I时，与法向夹角为theta、切向方位角为direction的点"""
    return _vec(rho * math.sin(theta) * math.cos(direction),
                rho * math.sin(theta) * math.sin(direction),
                rho * math.cos(theta))


R_IDENTITY = _vec(1.0, 1.0, 1.0)
R_SCALED = _vec(0.2, 0.2, 0.8)
ALPHA = math.atan(0.5)


def test_structure():
    c = _constraint(phi0=-0.01)
    assert c.num_constraint_equations() == 3
    assert c.num_cliques() == 1
    assert c.second_clique() is None
    assert c.constraint_type() == Constraint_Type.FRICTION_CONE
    torch.testing.assert_close(c.constraint_function(), _vec(0.0, 0.0, -0.01))


def test_two_clique_constraint_velocity():
    parameters = Friction_Cone_Parameters(mu=0.5, stiffness=1.0e5, dissipation_time_scale=0.1)
    J0 = torch.ones(3, 2, dtype=DTYPE)
    J1 = torch.eye(3, dtype=DTYPE)
    c = SapFrictionConeConstraint(1, J0, 0.0, parameters, clique1=4, J1=J1)
    assert c.num_cliques() == 2
    assert (c.first_clique(), c.second_clique()) == (1, 4)
    vc = c.calc_constraint_velocity(_vec(1.0, 2.0), _vec(0.5, 0.0, -1.0))
    torch.testing.assert_close(vc, _vec(3.5, 3.0, 2.0))
    with pytest.raises(ValueError):
        c.calc_constraint_velocity(_vec(1.0, 2.0))


@pytest.mark.parametrize("kwargs", [
    dict(clique0=-1),
    dict(J0=torch.eye(2, dtype=DTYPE)),
    dict(clique1=0, J1=torch.eye(3, dtype=DTYPE)),
    dict(clique1=1),
    dict(J1=torch.eye(3, dtype=DTYPE)),
    dict(clique1=1, J1=torch.ones(2, 3, dtype=DTYPE)),
])
def test_invalid_construction(kwargs):
    parameters = Friction_Cone_Parameters(mu=0.5, stiffness=1.0e5, dissipation_time_scale=0.1)
    args = dict(clique0=0, J0=torch.eye(3, dtype=DTYPE), phi0=0.0, parameters=parameters)
    args.update(kwargs)
    with pytest.raises(ValueError):
        SapFrictionConeConstraint(**args)


@pytest.mark.parametrize("kwargs", [
    dict(mu=-0.1),
    dict(stiffness=0.0),
    dict(dissipation_time_scale=-1.0),
    dict(sigma=0.0),
    dict(transition_width=1.0),
])
def test_invalid_parameters(kwargs):
    values = dict(mu=0.5, stiffness=1.0e5, dissipation_time_scale=0.1)
    values.update(kwargs)
    with pytest.raises(ValueError):
        Friction_Cone_Parameters(**values).validate()


def test_bias_and_regularization():
    c = _constraint(phi0=-0.001)
    dt = 0.01
    wi = torch.tensor(2.0, dtype=DTYPE)
    torch.testing.assert_close(c.calc_bias_term(dt, wi), _vec(0.0, 0.0, 0.001 / 0.11))
    # 近刚性：Rn由β²/(4π²)·wi决定
    R = c.calc_diagonal_regularization(dt, wi)
    torch.testing.assert_close(R, _vec(2.0e-3, 2.0e-3, 2.0 / (4.0 * math.pi ** 2)))
    # 柔性接触：Rn = 1/(dt·k·(dt+τd))
    soft = SapFrictionConeConstraint(
        0, torch.eye(3, dtype=DTYPE), 0.0,
        Friction_Cone_Parameters(mu=0.5, stiffness=100.0, dissipation_time_scale=0.1))
    R = soft.calc_diagonal_regularization(dt, wi)
    torch.testing.assert_close(R[2], torch.tensor(1.0 / (0.01 * 100.0 * 0.11), dtype=DTYPE))


def test_stick_passes_through():
    c = _constraint()
    for R in (R_IDENTITY, R_SCALED):
        y = _vec(0.1, -0.05, 1.0)
        gamma, dPdy = c.project(y, R)
        torch.testing.assert_close(gamma, y)
        torch.testing.assert_close(dPdy, torch.eye(3, dtype=DTYPE))
        torch.testing.assert_close(c.calc_cost(y, R), 0.5 * torch.dot(y, R * y))


def test_slide_projects_to_cone_boundary():
    c = _constraint(transition_width=0.0)
    gamma, _ = c.project(_vec(2.0, 0.0, 1.0), R_IDENTITY)
    torch.testing.assert_close(gamma, _vec(0.8, 0.0, 1.6))

    y = _vec(3.0, 4.0, 1.0)
    gamma, _ = c.project(y, R_SCALED)
    gt = torch.linalg.vector_norm(gamma[:2])
    assert gamma[2] > 0
    torch.testing.assert_close(gt, 0.5 * gamma[2])
    # 切向方向保持不变
    torch.testing.assert_close(gamma[:2] / gt, y[:2] / torch.linalg.vector_norm(y[:2]))
    # 与R加权空间中的闭式投影一致
    mu_tilde = 0.5 * math.sqrt(0.2 / 0.8)
    z = torch.sqrt(R_SCALED) * y
    zn = (z[2] + mu_tilde * torch.linalg.vector_norm(z[:2])) / (1.0 + mu_tilde ** 2)
    torch.testing.assert_close(gamma[2], zn / math.sqrt(0.8))


@pytest.mark.parametrize("y, exact", [((2.0, 0.0, 1.0), (0.8, 0.0, 1.6)), ((0.0, -3.0, 1.0), (0.0, -1.0, 2.0))])
def test_smoothed_slide_stays_on_cone_boundary(y, exact):
    """光滑后滑动区冲量仍在锥面上，大小与精确投影只差 O(w²)"""
    gamma, _ = _constraint().project(_vec(*y), R_IDENTITY)
    torch.testing.assert_close(torch.linalg.vector_norm(gamma[:2]), 0.5 * gamma[2])
    torch.testing.assert_close(gamma, _vec(*exact), rtol=1e-3, atol=0.0)


@pytest.mark.parametrize("y", [(0.5, 0.0, -1.0), (0.0, 0.0, -1.0), (0.0, 0.5, -1.0)])
def test_no_contact_projects_to_zero(y):
    c = _constraint()
    gamma, dPdy = c.project(_vec(*y), R_SCALED)
    torch.testing.assert_close(gamma, torch.zeros(3, dtype=DTYPE))
    torch.testing.assert_close(dPdy, torch.zeros(3, 3, dtype=DTYPE))
    assert c.calc_cost(_vec(*y), R_SCALED).item() == 0.0


def test_frictionless_is_unilateral():
    c = _constraint(mu=0.0)
    gamma, _ = c.project(_vec(0.3, -0.2, 1.0), R_IDENTITY)
    torch.testing.assert_close(gamma, _vec(0.0, 0.0, 1.0), atol=1e-12, rtol=0.0)
    gamma, dPdy = c.project(_vec(0.0, 0.0, 2.0), R_IDENTITY)
    torch.testing.assert_close(gamma, _vec(0.0, 0.0, 2.0))
    torch.testing.assert_close(dPdy, torch.diag(_vec(0.0, 0.0, 1.0)), atol=1e-12, rtol=0.0)
    gamma, _ = c.project(_vec(0.3, 0.0, -1.0), R_IDENTITY)
    torch.testing.assert_close(gamma, torch.zeros(3, dtype=DTYPE))


@pytest.mark.parametrize("R", [R_IDENTITY, R_SCALED])
@pytest.mark.parametrize("y", [(1.0, 0.0, 0.0), (1.0, 0.0, 0.005), (1.0, 0.0, -0.005), (-2.0, 0.5, 0.005)])
def test_frictionless_near_grazing_has_no_tangential_impulse(y, R):
    c = _constraint(mu=0.0)
    gamma, dPdy = c.project(_vec(*y), R)
    assert gamma[0].item() == 0.0
    assert gamma[1].item() == 0.0
    torch.testing.assert_close(gamma[2], torch.tensor(max(y[2], 0.0), dtype=DTYPE))
    assert torch.all(dPdy[:2] == 0)
    assert torch.all(c.calc_impulse(_vec(*y), R)[:2] == 0)


def test_frictionless_derivative_matches_autograd():
    c = _constraint(mu=0.0)
    y = _vec(0.7, -0.4, 0.3)
    _, dPdy = c.project(y, R_SCALED)
    jacobian = torch.autograd.functional.jacobian(lambda x: c.project(x, R_SCALED)[0], y)
    torch.testing.assert_close(dPdy, jacobian)
    torch.testing.assert_close(dPdy, torch.diag(_vec(0.0, 0.0, 1.0)))


def _sweep_angles(alpha):
    """[0, π]上的均匀采样，并在两个过渡带附近加密"""
    return torch.cat([
        torch.linspace(0.0, math.pi, 2001, dtype=DTYPE),
        torch.linspace(alpha - 0.03, alpha + 0.03, 601, dtype=DTYPE),
        torch.linspace(alpha + 0.5 * math.pi - 0.03, min(alpha + 0.5 * math.pi + 0.03, math.pi), 601, dtype=DTYPE),
    ])


@pytest.mark.parametrize("mu", [0.0, 0.5, 2.0])
@pytest.mark.parametrize("R", [R_IDENTITY, R_SCALED])
def test_impulse_stays_inside_cone(mu, R):
    """任意方向的y（含各过渡带）投影后 ‖γt‖ ≤ μ·γn，γn ≥ 0"""
    c = _constraint(mu=mu)
    alpha = math.atan(mu * math.sqrt(R[0].item() / R[2].item()))
    sqrt_R = torch.sqrt(R)
    for theta in _sweep_angles(alpha):
        # R加权空间中与法向夹角为theta
        y = _cone_point(theta.item()) / sqrt_R
        gamma = c.calc_impulse(y, R)
        assert gamma[2].item() >= -1e-12
        assert torch.linalg.vector_norm(gamma[:2]).item() <= mu * gamma[2].item() + 1e-12


@pytest.mark.parametrize("scale", [0.0, 1e-200])
def test_near_zero_input_falls_back_to_no_contact(scale):
    c = _constraint()
    y = (scale * _vec(1.0, 0.0, 1.0)).requires_grad_(True)
    gamma, dPdy = c.project(y, R_IDENTITY)
    assert torch.all(gamma == 0)
    assert torch.all(dPdy == 0)
    cost = c.calc_cost(y, R_IDENTITY)
    (grad,) = torch.autograd.grad(cost + gamma.sum(), y)
    assert torch.all(torch.isfinite(grad))


TRANSITION_POINTS = [
    _cone_point(ALPHA - 0.01),
    _cone_point(ALPHA + 0.005),
    _cone_point(ALPHA + 0.3),
    _cone_point(ALPHA + 0.5 * math.pi - 0.015),
    _cone_point(ALPHA + 0.5 * math.pi - 0.005),
    _cone_point(ALPHA + 0.5 * math.pi + 0.015),
]


@pytest.mark.parametrize("y", TRANSITION_POINTS)
def test_derivative_matches_autograd(y):
    c = _constraint()
    _, dPdy = c.project(y, R_IDENTITY)
    jacobian = torch.autograd.functional.jacobian(lambda x: c.project(x, R_IDENTITY)[0], y)
    torch.testing.assert_close(dPdy, jacobian)


@pytest.mark.parametrize("y", [_vec(3.0, 4.0, 1.0), _vec(0.4, 0.1, 1.0), _vec(1.0, -1.0, 0.05)])
def test_derivative_matches_autograd_scaled(y):
    c = _constraint()
    _, dPdy = c.project(y, R_SCALED)
    jacobian = torch.autograd.functional.jacobian(lambda x: c.project(x, R_SCALED)[0], y)
    torch.testing.assert_close(dPdy, jacobian)
    # G = dPdy·R⁻¹ 对称
    G = dPdy / R_SCALED.unsqueeze(0)
    torch.testing.assert_close(G, G.T)


@pytest.mark.parametrize("y", TRANSITION_POINTS + [_vec(3.0, 4.0, 1.0)])
def test_cost_gradient_is_weighted_impulse(y):
    """∂ℓ/∂y = R·γ，即 ∂ℓ/∂vc = -γ"""
    c = _constraint()
    x = y.clone().requires_grad_(True)
    (grad,) = torch.autograd.grad(c.calc_cost(x, R_SCALED), x)
    gamma, _ = c.project(y, R_SCALED)
    torch.testing.assert_close(grad, R_SCALED * gamma)


def test_forward_mode_dual_numbers():
    c = _constraint()
    y = _cone_point(ALPHA + 0.01)
    tangent = _vec(0.3, -0.7, 0.2)
    _, dPdy = c.project(y, R_SCALED)
    with fwAD.dual_level():
        dual = fwAD.make_dual(y, tangent)
        gamma, _ = c.project(dual, R_SCALED)
        gamma_tangent = fwAD.unpack_dual(gamma).tangent
    torch.testing.assert_close(gamma_tangent, dPdy @ tangent)


@pytest.mark.parametrize("center", [ALPHA, ALPHA + 0.5 * math.pi])
def test_derivative_continuous_across_regime_boundaries(center):
    """沿光滑轨迹穿过粘滞/滑动/分离边界，dP/dy无跳变"""
    c = _constraint()
    thetas = torch.linspace(center - 0.03, center + 0.03, 2001, dtype=DTYPE)
    previous = None
    max_jump = 0.0
    for theta in thetas:
        _, dPdy = c.project(_cone_point(theta.item()), R_IDENTITY)
        if previous is not None:
            max_jump = max(max_jump, (dPdy - previous).abs().max().item())
        previous = dPdy
    assert max_jump < 0.05


@pytest.mark.parametrize("theta", [ALPHA - 0.02, ALPHA + 0.01, ALPHA + 0.02, ALPHA + 0.5 * math.pi - 0.02,
                                   ALPHA + 0.5 * math.pi - 0.01, ALPHA + 0.5 * math.pi + 0.02])
def test_derivative_matches_finite_differences_at_band_edges(theta):
    c = _constraint()
    y = _cone_point(theta)
    _, dPdy = c.project(y, R_IDENTITY)
    h = 1.0e-6
    columns = []
    for k in range(3):
        e = torch.zeros(3, dtype=DTYPE)
        e[k] = h
        columns.append((c.project(y + e, R_IDENTITY)[0] - c.project(y - e, R_IDENTITY)[0]) / (2.0 * h))
    torch.testing.assert_close(dPdy, torch.stack(columns, dim=1), atol=1e-4, rtol=1e-4)


def test_exact_projection_without_smoothing():
    c = _constraint(transition_width=0.0)
    gamma, _ = c.project(_cone_point(ALPHA - 1e-6), R_IDENTITY)
    torch.testing.assert_close(gamma, _cone_point(ALPHA - 1e-6))
    gamma, _ = c.project(_cone_point(ALPHA + 0.5 * math.pi + 1e-6), R_IDENTITY)
    torch.testing.assert_close(gamma, torch.zeros(3, dtype=DTYPE))


def test_clone_is_independent():
    c = _constraint(phi0=-0.01)
    c.set_id(3)
    d = c.clone()
    assert d.id == 3
    assert d.parameters == c.parameters
    assert d.first_clique_jacobian() is not c.first_clique_jacobian()
