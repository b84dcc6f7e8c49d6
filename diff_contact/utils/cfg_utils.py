""" SAP接触问题的参数"总调度"：
配置来源整合：命令行只传入配置文件路径（--config），其余参数从JSON配置文件读取，
并用argparse定义的默认值补齐缺省项（时间步长、摩擦锥默认参数、过渡带宽度等）；
参数结构化：各部分参数按功能分组为Namespace（sys_args / sap_args），供Builder直接按属性访问。 """
import argparse
from argparse import ArgumentParser, Namespace
import json
import os


def config_parser():
    '''
    顶层命令行参数解析器（仅用于读取配置文件路径）
    Returns:
        parser: 命令行参数解析器实例
    '''
    parser = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument('--config', required=True,
                        help='config file path (JSON配置文件路径，存储系统、SAP问题等所有参数)')
    return parser


def load_config(path):
    '''
    读取JSON配置文件
    Args:
        path: 配置文件路径
    Returns:
        dict: 全部参数（包含sys_args、sap_args等字段）
    Raises:
        ValueError: 文件不存在或缺少必需字段
    '''
    if not os.path.isfile(path):
        raise ValueError(f"Config file {path} does not exist.")
    with open(path, 'r') as f:
        all_args = json.load(f)
    for section in ('sys_args', 'sap_args'):
        if section not in all_args:
            raise ValueError(f"Config file {path} is missing the '{section}' section.")
    return all_args


def get_combined_args(args1, args2):
    '''
    合并两个Namespace（args2覆盖args1中已存在的字段，未知字段忽略）
    '''
    args1_dict = vars(args1)
    args2_dict = vars(args2)
    for k, v in args2_dict.items():
        if k in args1_dict:
            args1_dict[k] = v
    return Namespace(**args1_dict)


def get_sys_args(sys_args):
    '''
    系统参数：随机种子、输出目录、计算设备与数值类型、日志格式
    '''
    parser = ArgumentParser(description="system parameters")
    parser.add_argument('--seed', type=int, default=0)
    parser.add_argument('--output_path', type=str, default=None)
    parser.add_argument('--device', type=str, default='cpu')
    parser.add_argument('--dtype', type=str, default='float64', choices=['float32', 'float64'])
    parser.add_argument('--log_formats', nargs="+", type=str, default=['stdout'])
    parser.add_argument('--log_level', type=int, default=20)
    args = parser.parse_args([])
    return get_combined_args(args, Namespace(**sys_args))


def get_sap_args(sap_args):
    '''
    SAP问题参数：时间步长 + 摩擦锥约束的默认参数
    只解析空列表，用parser的定义提供默认值，再由配置文件中的sap_args覆盖
    Args:
        sap_args (dict): 配置文件中的sap_args字段
    Returns:
        Namespace
    '''
    parser = ArgumentParser(description="sap problem parameters")
    parser.add_argument('--time_step', type=float, default=1.0e-2, help='时间步长dt')
    parser.add_argument('--mu', type=float, default=0.5, help='默认摩擦系数')
    parser.add_argument('--stiffness', type=float, default=1.0e6, help='默认法向接触刚度k')
    parser.add_argument('--dissipation_time_scale', type=float, default=0.1, help='默认耗散时间常数τd')
    parser.add_argument('--beta', type=float, default=1.0, help='近刚性法向正则化系数')
    parser.add_argument('--sigma', type=float, default=1.0e-3, help='切向正则化系数')
    parser.add_argument('--transition_width', type=float, default=0.02, help='摩擦锥区间边界光滑宽度（弧度）')
    parser.add_argument('--newton_iterations', type=int, default=20, help='演示Newton迭代上限')
    parser.add_argument('--newton_tolerance', type=float, default=1.0e-10, help='演示Newton迭代梯度范数阈值')
    args = parser.parse_args([])
    args = get_combined_args(args, Namespace(**sap_args))
    if args.time_step <= 0:
        raise ValueError(f"time_step must be positive, got {args.time_step}.")
    return args
