from __future__ import annotations

"""
缓存抽象。

当前提供：
- `Cache` Protocol：定义 get/set/close 接口（value 统一是 str，调用方自己序列化）
- `InMemoryCache`：进程内 TTL 缓存，便于本地运行/单元测试
- `RedisCache`：生产用（多个 worker 共享）

缓存不是权威数据：读写失败只记日志并当作 miss，代价只是多一次 embedding 调用。
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """缓存接口协议（用于依赖倒置，方便替换 Redis/Memory）。"""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    async def close(self) -> None: ...


@dataclass
class InMemoryCache:
    """
    内存缓存（单进程）。

    - 读到过期 key 时删除；`set` 时每隔 `sweep_interval_seconds` 扫一遍过期项
    - 最多保留 `max_entries` 个 key，超出时按 LRU 淘汰
    """

    max_entries: int = 10_000
    sweep_interval_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic
    store: OrderedDict[str, tuple[float, str]] = field(default_factory=OrderedDict)
    _next_sweep_at: float = field(default=0.0, repr=False)

    def __post_init__(self) -> None:
        if self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")

    async def get(self, key: str) -> str | None:
        entry = self.store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            self.store.pop(key, None)
            return None
        self.store.move_to_end(key)
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        now = self.clock()
        if now >= self._next_sweep_at:
            self._sweep(now)
        self.store[key] = (now + ttl_seconds, value)
        self.store.move_to_end(key)
        while len(self.store) > self.max_entries:
            self.store.popitem(last=False)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self.store.items() if now >= expires_at]
        for k in expired:
            del self.store[k]
        self._next_sweep_at = now + self.sweep_interval_seconds
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")

    async def close(self) -> None:
        self.store.clear()


class RedisCache:
    """Redis 缓存（SETEX）。所有 key 加统一前缀，方便按前缀排查/清理。"""

    def __init__(self, host: str, port: int, password: str | None = None, key_prefix: str = "coderag:") -> None:
        self._redis = Redis(host=host, port=port, password=password, decode_responses=True)
        self._key_prefix = key_prefix
        self._closed = False

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(self._key_prefix + key)
        except RedisError as exc:
            logger.warning(f"Redis get failed, treating as miss: {exc}")
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        try:
            await self._redis.set(self._key_prefix + key, value, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            logger.warning(f"Redis set failed, result not cached: {exc}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._redis.aclose()
