# 接触问题求解实验的日志管理工具：统一输出目录管理 + 多格式键值对日志（控制台表格、文本文件、TensorBoard）。
# 库内对象（SapContactProblem、SapModel）未显式传入logger时使用进程级默认logger（stdout，WARN级别），
# 演示脚本/外部Newton求解器可通过configure_logger创建带文件输出的logger，逐迭代记录代价、梯度范数等。
import datetime  # 日期时间处理（日志目录时间戳）
import os  # 文件/目录操作
import sys  # 标准输出stdout
import time
import uuid  # 生成唯一标识符（用于输出目录命名）
import warnings
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple, Union

import numpy as np
import torch
from matplotlib import pyplot as plt

# 尝试导入TensorBoard日志写入器（若未安装则设为None）
try:
    from torch.utils.tensorboard import SummaryWriter
except ImportError:
    SummaryWriter = None

# 日志级别常量定义（数值越大输出越精简）
DEBUG = 10
INFO = 20
WARN = 30
ERROR = 40
DISABLED = 50


def prepare_output_and_logger(all_args, need_logger=False):
    """
    实验初始化：创建输出目录 + 保存实验参数 + 初始化各模块日志器
    Args:
        all_args: 实验所有参数（字典格式，至少包含sys_args）
        need_logger: 是否需要初始化日志器
    Returns:
        all_args: 更新后的参数（补充输出目录路径）
        loggers: 模块名 → Logger实例
    """
    # 未指定输出目录时生成唯一目录
    if not all_args['sys_args'].get('output_path'):
        unique_str = str(uuid.uuid4())
        all_args['sys_args']['output_path'] = os.path.join("./output", unique_str[0:10])

    print("Output folder: {}".format(all_args['sys_args']['output_path']))
    os.makedirs(all_args['sys_args']['output_path'], exist_ok=True)

    # 保存所有实验参数，便于复现
    with open(os.path.join(all_args['sys_args']['output_path'], "all_args"), 'w') as args_log_f:
        args_log_f.write(str(all_args))

    loggers = {}
    if need_logger:
        formatted_time = datetime.datetime.fromtimestamp(time.time()).strftime("%Y-%m-%d_%H-%M-%S")
        logs_dir = os.path.join(all_args['sys_args']['output_path'], "logs", formatted_time)
        os.makedirs(logs_dir, exist_ok=True)
        print("log_dir:", logs_dir)

        # problem：问题组装信息（clique/约束/图规模）；solver：Newton迭代记录
        modules_name = ["problem", "solver"]
        format_strings = all_args['sys_args'].get('log_formats', ["stdout", "log"])
        for module_name in modules_name:
            log_module_name_dir = os.path.join(logs_dir, module_name)
            loggers[module_name] = configure_logger(log_module_name_dir, format_strings)
            loggers[module_name].set_level(all_args['sys_args'].get('log_level', INFO))

    return all_args, loggers


class Figure(object):
    """
    matplotlib图表封装（如Newton迭代的代价/梯度范数收敛曲线）
    """
    def __init__(self, figure: plt.figure, close: bool):
        """
        Args:
            figure: matplotlib图表对象
            close: 记录后是否关闭图表
        """
        self.figure = figure
        self.close = close


class FormatUnsupportedError(NotImplementedError):
    """日志值类型与输出格式不匹配时抛出（如图表输出到文本日志）"""
    def __init__(self, unsupported_formats: Sequence[str], value_description: str):
        if len(unsupported_formats) > 1:
            format_str = f"formats {', '.join(unsupported_formats)} are"
        else:
            format_str = f"format {unsupported_formats[0]} is"
        super(FormatUnsupportedError, self).__init__(
            f"The {format_str} not supported for the {value_description} value logged.\n"
            f"You can exclude formats via the `exclude` parameter of the logger's `record` function."
        )


class KVWriter(object):
    """
    键值对日志写入器基类（如 cost=0.1, grad_norm=1e-8）
    """
    def write(
        self,
        key_values: Dict[str, Any],
        key_excluded: Dict[str, Union[str, Tuple[str, ...]]],
        step: int = 0,
    ) -> None:
        """
        Args:
            key_values: 键值对字典（如{'newton/cost': 0.5}）
            key_excluded: 每个键排除的输出格式
            step: 日志步骤（如Newton迭代次数）
        """
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class SeqWriter(object):
    """
    序列日志写入器基类（逐行文本，如调试信息）
    """
    def write_sequence(self, sequence: List) -> None:
        raise NotImplementedError


class HumanOutputFormat(KVWriter, SeqWriter):
    """
    人类可读日志格式，输出到控制台或文本文件
    输出示例：
    ----------------------------
    | newton/                  |         |
    |    cost                  | 0.5     |
    |    grad_norm             | 1e-08   |
    ----------------------------
    """
    def __init__(self, filename_or_file: Union[str, TextIO], max_length: int = 36):
        self.max_length = max_length
        if isinstance(filename_or_file, str):
            self.file = open(filename_or_file, "wt")
            self.own_file = True
        else:
            assert hasattr(filename_or_file, "write"), f"Expected file or str, got {filename_or_file}"
            self.file = filename_or_file
            self.own_file = False

    def write(self, key_values: Dict, key_excluded: Dict, step: int = 0) -> None:
        key2str = []
        tag = None
        tags = set()
        for (key, value), (_, excluded) in zip(
            sorted(key_values.items()), sorted(key_excluded.items())
        ):
            if excluded is not None and ("stdout" in excluded or "log" in excluded):
                continue
            elif isinstance(value, Figure):
                raise FormatUnsupportedError(["stdout", "log"], "figure")
            # 0维张量按浮点数显示
            elif isinstance(value, torch.Tensor) and value.dim() == 0:
                value_str = f"{value.item():<8.3g}"
            elif isinstance(value, float):
                value_str = f"{value:<8.3g}"
            else:
                value_str = str(value)

            # 键的标签前缀（如"newton/cost"中的"newton/"）作为分组标题
            if key.find("/") > 0:
                tag = key[: key.find("/") + 1]
                if tag not in tags:
                    tags.add(tag)
                    key2str.append((self._truncate(tag), ""))
            if tag is not None and tag in key:
                key = str("   " + key[len(tag):])
            key2str.append((self._truncate(key), self._truncate(value_str)))

        if len(key2str) == 0:
            warnings.warn("Tried to write empty key-value dict")
            return
        else:
            keys, vals = list(zip(*key2str))
            key_width = max(map(len, keys))
            val_width = max(map(len, vals))

        dashes = "-" * (key_width + val_width + 7)
        lines = [dashes]
        for key, value in key2str:
            key_space = " " * (key_width - len(key))
            val_space = " " * (val_width - len(value))
            lines.append(f"| {key}{key_space} | {value}{val_space} |")
        lines.append(dashes)
        self.file.write("\n".join(lines) + "\n")
        self.file.flush()

    def _truncate(self, string: str) -> str:
        if len(string) > self.max_length:
            string = string[: self.max_length - 3] + "..."
        return string

    def write_sequence(self, sequence: List) -> None:
        sequence = list(sequence)
        for i, elem in enumerate(sequence):
            self.file.write(elem)
            if i < len(sequence) - 1:
                self.file.write(" ")
        self.file.write("\n")
        self.file.flush()

    def close(self) -> None:
        if self.own_file:
            self.file.close()


class TensorBoardOutputFormat(KVWriter):
    """
    TensorBoard日志格式：标量时序曲线与收敛图
    """
    def __init__(self, folder: str):
        assert SummaryWriter is not None, (
            "tensorboard is not installed, you can use "
            "pip install tensorboard to do so"
        )
        self.writer = SummaryWriter(log_dir=folder)

    def write(
        self,
        key_values: Dict[str, Any],
        key_excluded: Dict[str, Union[str, Tuple[str, ...]]],
        step: int = 0,
    ) -> None:
        for (key, value), (_, excluded) in zip(
            sorted(key_values.items()), sorted(key_excluded.items())
        ):
            if excluded is not None and "tensorboard" in excluded:
                continue

            if isinstance(value, (np.ScalarType, torch.Tensor)):
                if isinstance(value, str):
                    self.writer.add_text(key, value, step)
                else:
                    self.writer.add_scalar(key, value, step)

            if isinstance(value, Figure):
                self.writer.add_figure(key, value.figure, step, close=value.close)

        self.writer.flush()

    def close(self) -> None:
        if self.writer:
            self.writer.close()
            self.writer = None


def make_output_format(_format: str, log_dir: str, log_suffix: str = "") -> KVWriter:
    """
    根据格式字符串创建日志写入器
    Args:
        _format: "stdout"=控制台，"log"=文本文件，"tensorboard"=TensorBoard
        log_dir: 日志保存目录
        log_suffix: 日志文件后缀
    """
    if _format == "stdout":
        return HumanOutputFormat(sys.stdout)
    os.makedirs(log_dir, exist_ok=True)
    if _format == "log":
        return HumanOutputFormat(os.path.join(log_dir, f"log{log_suffix}.txt"))
    elif _format == "tensorboard":
        return TensorBoardOutputFormat(log_dir)
    else:
        raise ValueError(f"Unknown format specified: {_format}")


class Logger(object):
    """
    日志核心类：键值对记录（覆盖/平均）、按步骤刷新到所有格式、分级文本日志
    """
    def __init__(self, folder: Optional[str], output_formats: List[KVWriter]):
        self.name_to_value = defaultdict(float)
        self.name_to_count = defaultdict(int)
        self.name_to_excluded = defaultdict(str)
        self.level = INFO
        self.dir = folder
        self.output_formats = output_formats

    def record(
        self,
        key: str,
        value: Any,
        exclude: Optional[Union[str, Tuple[str, ...]]] = None,
    ) -> None:
        """记录单个键值对（多次调用取最后一次值）"""
        self.name_to_value[key] = value
        self.name_to_excluded[key] = exclude

    def record_mean(
        self,
        key: str,
        value: Any,
        exclude: Optional[Union[str, Tuple[str, ...]]] = None,
    ) -> None:
        """记录键值对的滑动平均（如一次线搜索中各试探点的平均代价）"""
        if value is None:
            self.name_to_value[key] = None
            return
        old_val, count = self.name_to_value[key], self.name_to_count[key]
        self.name_to_value[key] = old_val * count / (count + 1) + value / (count + 1)
        self.name_to_count[key] = count + 1
        self.name_to_excluded[key] = exclude

    def dump(self, step: int = 0) -> None:
        """把当前记录的键值对写入所有格式并清空缓存"""
        if self.level == DISABLED:
            return
        for _format in self.output_formats:
            if isinstance(_format, KVWriter):
                _format.write(self.name_to_value, self.name_to_excluded, step)
        self.name_to_value.clear()
        self.name_to_count.clear()
        self.name_to_excluded.clear()

    def log(self, *args, level: int = INFO) -> None:
        if self.level <= level:
            self._do_log(args)

    def debug(self, *args) -> None:
        self.log(*args, level=DEBUG)

    def info(self, *args) -> None:
        self.log(*args, level=INFO)

    def warn(self, *args) -> None:
        self.log(*args, level=WARN)

    def error(self, *args) -> None:
        self.log(*args, level=ERROR)

    def set_level(self, level: int) -> None:
        self.level = level

    def get_dir(self) -> str:
        return self.dir

    def close(self) -> None:
        for _format in self.output_formats:
            _format.close()

    def _do_log(self, args) -> None:
        for _format in self.output_formats:
            if isinstance(_format, SeqWriter):
                _format.write_sequence(map(str, args))


def configure_logger(folder: str, format_strings: List[str] = None) -> Logger:
    """
    配置单个日志器
    Args:
        folder: 日志保存目录
        format_strings: 日志格式列表（如["stdout", "tensorboard"]）
    Returns:
        Logger
    """
    assert isinstance(folder, str)
    os.makedirs(folder, exist_ok=True)

    log_suffix = ""
    format_strings = list(filter(None, format_strings or ["stdout"]))
    output_formats = [make_output_format(f, folder, log_suffix) for f in format_strings]

    logger = Logger(folder=folder, output_formats=output_formats)
    if len(format_strings) > 0 and format_strings != ["stdout"]:
        logger.log(f"Logging to {folder}")
    return logger


_default_logger = None


def get_logger() -> Logger:
    """
    进程级默认logger：仅输出到stdout，WARN级别（库内DEBUG信息默认不显示）
    """
    global _default_logger
    if _default_logger is None:
        _default_logger = Logger(folder=None, output_formats=[HumanOutputFormat(sys.stdout)])
        _default_logger.set_level(WARN)
    return _default_logger


def print_header(msg):
    """统一格式的单行状态输出"""
    print('===>', msg)
