from __future__ import annotations

"""
有界重试（指数退避）。

只用于幂等操作：embedding 调用、按确定性 point id 的向量 upsert。
重试耗尽后抛出最后一次的异常，由调用方决定跳过文件还是整体失败。
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay_seconds: float,
    retry_on: tuple[type[BaseException], ...],
    description: str,
) -> T:
    if attempts <= 0:
        raise ValueError("attempts must be > 0")
    if base_delay_seconds < 0:
        raise ValueError("base_delay_seconds must be >= 0")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                logger.error(f"{description} failed after {attempts} attempt(s): {exc}")
                raise
            delay = base_delay_seconds * (2 ** (attempt - 1))
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {exc}")
            await anyio.sleep(delay)
    raise AssertionError("unreachable")
