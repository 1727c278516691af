"""Loguru logger configuration."""

import sys
from pathlib import Path
from loguru import logger


# 控制台格式：普通模式只显示级别和消息
CONSOLE_FORMAT = "<level>{level: <8}</level> | <level>{message}</level>"
CONSOLE_FORMAT_VERBOSE = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def init_logger(log_dir: str = "logs", verbose: bool = False, retention: str = "10 days"):
    """
    初始化日志配置

    Console output goes to stderr so command output on stdout stays clean
    for scripts. Log files always record DEBUG.

    Args:
        log_dir: 日志目录
        verbose: 控制台输出DEBUG及模块行号
        retention: 日志文件保留时间
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()

    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format=CONSOLE_FORMAT_VERBOSE if verbose else CONSOLE_FORMAT,
        colorize=True
    )

    # 每天轮转
    logger.add(
        log_path / "easywp_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format=FILE_FORMAT,
        rotation="00:00",
        retention=retention,
        encoding="utf-8"
    )

    # 错误日志单独保存，带回溯
    logger.add(
        log_path / "easywp_errors_{time:YYYY-MM-DD}.log",
        level="ERROR",
        format=FILE_FORMAT + "\n{exception}",
        rotation="00:00",
        retention=retention,
        encoding="utf-8",
        backtrace=True,
        diagnose=True
    )

    logger.debug(f"Logger initialized, log dir: {log_path}")
