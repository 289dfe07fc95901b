"""
penv 工具模块。

提供日志记录、重试、文件操作和输入验证等工具功能。
"""

from .errors import PenvError
from .logger import get_logger, setup_logger
from .retry import RetryHandler
from .input_validator import InputValidator, InputValidationError

__all__ = [
    "PenvError",
    "get_logger",
    "setup_logger",
    "RetryHandler",
    "InputValidator",
    "InputValidationError",
]
