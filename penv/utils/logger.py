"""
日志模块。

提供应用程序日志的配置和管理功能。

控制台输出固定写入 stderr，stdout 只留给命令输出和 shell hook 文本。
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_logger: Optional[logging.Logger] = None

LOGGER_NAME = "penv"
LOG_FILE_NAME = "penv.log"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(module)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_LEVEL_ENV = "PENV_LOG"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 5


def level_from_env(default: int = logging.WARNING) -> int:
    """
    从 PENV_LOG 环境变量读取日志级别。

    参数:
        default: 未设置或无法识别时使用的级别

    返回:
        logging 模块的级别常量
    """
    value = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    if not value:
        return default
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else default


def setup_logger(
    level: int = logging.WARNING,
    log_to_file: bool = False,
    log_to_console: bool = True,
    log_dir: Optional[Path] = None,
    max_bytes: int = MAX_BYTES,
    backup_count: int = BACKUP_COUNT,
) -> logging.Logger:
    """
    配置并初始化日志记录器。

    重复调用会替换已有的处理器，模块级持有的 logger 引用保持有效。

    参数:
        level: 控制台日志级别，默认为 WARNING
        log_to_file: 是否输出到文件
        log_to_console: 是否输出到控制台（stderr）
        log_dir: 日志文件目录，log_to_file 为 True 时必须提供
        max_bytes: 单个日志文件最大字节数，默认为 5MB
        backup_count: 保留的备份文件数量，默认为 5

    返回:
        配置好的 Logger 实例
    """
    global _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_to_file else level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if log_to_file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(min(level, logging.INFO))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """
    获取日志记录器实例。

    如果尚未初始化，则只配置控制台输出，级别取自 PENV_LOG。

    返回:
        Logger 实例
    """
    if _logger is None:
        return setup_logger(level=level_from_env())
    return _logger
