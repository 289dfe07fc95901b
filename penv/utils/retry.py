"""
重试机制工具模块。

提供指数退避重试策略，用于处理发布索引查询和资产下载中的临时性网络错误。
"""

import time
import random
from typing import Callable, TypeVar, Optional, Any

import requests

from penv.utils.logger import get_logger

logger = get_logger()

T = TypeVar('T')

RETRYABLE_STATUS_CODES = (408, 429)


class RetryHandler:
    """
    重试处理器类。

    实现指数退避重试策略。只有被判定为临时性的错误才会重试，
    其余错误立即向上抛出。
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        初始化重试处理器。

        参数:
            max_retries: 最大重试次数（不含首次尝试）
            base_delay: 基础延迟时间（秒）
            max_delay: 最大延迟时间（秒）
            backoff_factor: 退避因子
            jitter: 是否添加随机抖动
            sleep: 等待函数，测试中可替换
        """
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self._sleep = sleep

    def _calculate_delay(self, attempt: int) -> float:
        """
        计算第 n 次重试的延迟时间。

        参数:
            attempt: 重试次数（从 0 开始）

        返回:
            延迟时间（秒）
        """
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

    @staticmethod
    def is_retryable_error(exception: BaseException) -> bool:
        """
        判断错误是否可重试。

        超时、连接错误、分块传输中断，以及 5xx/408/429 响应视为临时错误。

        参数:
            exception: 异常对象

        返回:
            可重试返回 True，否则返回 False
        """
        if isinstance(exception, requests.exceptions.HTTPError):
            response = exception.response
            if response is None:
                return False
            status_code = response.status_code
            return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES

        return isinstance(exception, (
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ))

    def execute(
        self,
        func: Callable[..., T],
        *args: Any,
        description: Optional[str] = None,
        **kwargs: Any
    ) -> T:
        """
        执行函数，遇到临时错误时自动重试。

        参数:
            func: 要执行的函数
            *args: 函数位置参数
            description: 日志中使用的操作描述
            **kwargs: 函数关键字参数

        返回:
            函数执行结果

        抛出:
            不可重试的错误立即抛出；超过最大重试次数后抛出最后一次异常
        """
        label = description or getattr(func, "__name__", "request")

        for attempt in range(self.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable_error(e):
                    logger.debug(f"{label} 遇到不可重试的错误: {e}")
                    raise

                if attempt >= self.max_retries:
                    logger.error(f"{label} 已达到最大重试次数 {self.max_retries}，放弃重试")
                    raise

                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"{label} 失败 (尝试 {attempt + 1}/{self.max_retries + 1}): {e}，"
                    f"{delay:.2f} 秒后重试..."
                )
                self._sleep(delay)

        raise AssertionError("unreachable")
