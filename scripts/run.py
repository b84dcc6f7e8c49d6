# SAP接触问题演示：两个单自由度clique沿接触法向相向运动，由一个摩擦锥约束相连。
# 用SapModel提供的代价/梯度/Hessian接口驱动一个朴素的Newton + 回溯线搜索循环（外部求解器的最小示例），
# 逐迭代记录代价与梯度范数，最后输出完整速度、接触冲量和动量变化。
import json  # 结果保存（JSON格式）
import os
import sys

import numpy as np
import torch
from matplotlib import pyplot as plt
from tqdm import tqdm  # Newton迭代进度条

# 设置当前工作目录并添加到系统路径（确保从仓库根目录运行时模块导入正常）
cur_work_path = os.getcwd()
sys.path.append(cur_work_path)

from builder import Builder
from diff_contact.utils.cfg_utils import config_parser, load_config
from diff_contact.utils.sys_utils import Figure, prepare_output_and_logger, print_header

# ============================ 实验参数配置 ============================
# 系统参数
sys_args = dict(
    seed=0,
    output_path='./output/colliding_pair',
    dtype='float64',
    log_formats=['stdout', 'log'],
)

# SAP问题参数（未给出的字段使用cfg_utils中的默认值）
sap_args = dict(
    time_step=1.0e-2,
    stiffness=1.0e6,
    dissipation_time_scale=0.1,
    newton_iterations=30,
    newton_tolerance=1.0e-10,
)

# 演示场景：质量与自由运动速度
scene_args = dict(
    masses=[1.0, 2.0],
    free_velocities=[1.0, -1.0],
    mu=0.0,
    phi0=0.0,
)


def solve_newton(model, v0, max_iterations, tolerance, logger=None):
    """
    朴素Newton迭代：dv = -H⁻¹·∇ℓ，回溯线搜索满足Armijo条件
    Args:
        model (SapModel): SAP模型
        v0: 初始参与速度
        max_iterations: 迭代上限
        tolerance: 梯度范数收敛阈值
        logger: 日志器
    Returns:
        tuple: (收敛速度, 每次迭代的(代价, 梯度范数)列表)
    """
    v = v0.clone()
    history = []
    progress_bar = tqdm(range(max_iterations), desc="Newton Progress")
    for it in progress_bar:
        evaluation = model.calc_cost_and_gradient(v)
        grad_norm = torch.linalg.vector_norm(evaluation.gradient)
        history.append((evaluation.cost.item(), grad_norm.item()))
        if logger is not None:
            logger.record("newton/cost", evaluation.cost.item())
            logger.record("newton/momentum_cost", evaluation.momentum_cost.item())
            logger.record("newton/regularizer_cost", evaluation.regularizer_cost.item())
            logger.record("newton/grad_norm", grad_norm.item())
            logger.dump(it)
        progress_bar.set_postfix({"cost": evaluation.cost.item(), "grad_norm": grad_norm.item()})
        if grad_norm <= tolerance:
            break

        H = model.calc_hessian(v, evaluation)
        dv = -torch.linalg.solve(H, evaluation.gradient)
        # 回溯线搜索
        slope = torch.dot(evaluation.gradient, dv)
        alpha = 1.0
        while alpha > 1.0e-8:
            trial = model.calc_cost_and_gradient(v + alpha * dv, compute_derivative=False)
            if trial.cost <= evaluation.cost + 1.0e-4 * alpha * slope:
                break
            alpha *= 0.5
        v = v + alpha * dv
    progress_bar.close()
    return v, history


def plot_history(history):
    """绘制代价与梯度范数的收敛曲线"""
    history = np.array(history)
    figure, axes = plt.subplots(1, 2, figsize=(8, 3))
    axes[0].plot(history[:, 0], marker='o')
    axes[0].set_title("cost")
    axes[1].semilogy(np.maximum(history[:, 1], 1e-300), marker='o')
    axes[1].set_title("gradient norm")
    for ax in axes:
        ax.set_xlabel("iteration")
    figure.tight_layout()
    return figure


def run_colliding_pair(all_args):
    """
    主流程：参数配置 → 输出目录+日志初始化 → 场景构建 → Newton求解 → 结果保存
    """
    all_args, loggers = prepare_output_and_logger(all_args, need_logger=True)
    builder = Builder(all_args, logger=loggers["problem"])
    scene = all_args.get('scene_args', scene_args)

    problem, model = builder.build_colliding_pair(
        scene['masses'], scene['free_velocities'], mu=scene.get('mu', 0.0), phi0=scene.get('phi0', 0.0))
    print_header(f"{model}: {problem.num_cliques()} cliques, {problem.num_constraints()} constraints")

    v, history = solve_newton(model, model.v_star(), builder.sap_args.newton_iterations,
                              builder.sap_args.newton_tolerance, logger=loggers["solver"])

    v_full = model.expand_velocities(v)
    gamma = model.calc_impulses(v)
    momentum_before = model.p_star().sum()
    momentum_after = model.multiply_by_dynamics_matrix(v).sum()
    print_header(f"velocities: {v_full.tolist()}")
    print_header(f"impulses: {gamma.tolist()}")
    print_header(f"momentum: {momentum_before.item():.6g} -> {momentum_after.item():.6g}")

    figure = plot_history(history)
    if "tensorboard" in builder.sys_args.log_formats:
        loggers["solver"].record("newton/convergence", Figure(figure, close=False), exclude=("stdout", "log"))
        loggers["solver"].dump(len(history))
    figure.savefig(os.path.join(builder.sys_args.output_path, "convergence.png"))
    plt.close(figure)

    with open(os.path.join(builder.sys_args.output_path, "result.json"), 'w') as json_file:
        json.dump({
            "velocities": v_full.tolist(),
            "impulses": gamma.tolist(),
            "momentum_before": momentum_before.item(),
            "momentum_after": momentum_after.item(),
            "iterations": len(history),
        }, fp=json_file, indent=4)

    for logger in loggers.values():
        logger.close()
    return v_full


if __name__ == '__main__':
    if len(sys.argv) > 1:
        args = config_parser().parse_args()
        all_args = load_config(args.config)
    else:
        all_args = {
            'sys_args': sys_args,
            'sap_args': sap_args,
            'scene_args': scene_args,
        }
    run_colliding_pair(all_args)
