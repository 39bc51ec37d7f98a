"""
Token 吊销集合（按 jti）的只读访问。
- 单实例：内存存储，无外部依赖（亦供测试与本地开发写入吊销项）。
- 集群：auth.revocation.storeUri / GATEWAY_REVOCATION_STORE_URL 指向 Redis 时，读 gateway:revoked:<jti>。
- 性能：本地 LRU + TTL 缓存（默认 60s，命中与未命中均缓存），吊销生效最多滞后一个 TTL。
- 可用性：查询超时或存储异常时按 failOpen 决定放行（默认）或拒绝。
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from .config import AuthSettings
from .errors import ErrorCode, GatewayError

logger = logging.getLogger("gateway.revocation")

REVOKED_KEY_PREFIX = "gateway:revoked:"


class MemoryRevocationStore:
    """进程内吊销集合，不跨实例共享。"""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: Dict[str, Optional[float]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self.lookups = 0

    def revoke(self, jti: str, ttl_sec: Optional[float] = None) -> None:
        with self._lock:
            self._data[jti] = self._clock() + ttl_sec if ttl_sec else None

    def restore(self, jti: str) -> None:
        with self._lock:
            self._data.pop(jti, None)

    async def is_revoked(self, jti: str) -> bool:
        with self._lock:
            self.lookups += 1
            if jti not in self._data:
                return False
            expires = self._data[jti]
            if expires is not None and expires <= self._clock():
                del self._data[jti]
                return False
            return True

    async def close(self) -> None:
        return None


class RedisRevocationStore:
    """Redis 吊销集合：键存在即已吊销（由签发方写入并设置与 token 同寿命的 TTL）。"""

    def __init__(self, url: str, key_prefix: str = REVOKED_KEY_PREFIX) -> None:
        import redis.asyncio as aioredis
        self._client = aioredis.from_url(url, decode_responses=True)
        self._prefix = key_prefix

    async def is_revoked(self, jti: str) -> bool:
        return bool(await self._client.exists(self._prefix + jti))

    async def revoke(self, jti: str, ttl_sec: int = 86400) -> None:
        await self._client.setex(self._prefix + jti, ttl_sec, "1")

    async def close(self) -> None:
        await self._client.aclose()


class CachedRevocationStore:
    """包装后端存储：本地 LRU 缓存 + 超时保护，吸收存储延迟。"""

    def __init__(
        self,
        backend,
        cache_ttl_sec: float = 60,
        max_size: int = 10000,
        timeout_ms: int = 500,
        fail_open: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._ttl = cache_ttl_sec
        self._max_size = max_size
        self._timeout = timeout_ms / 1000.0
        self._fail_open = fail_open
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[bool, float]]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def backend(self):
        return self._backend

    def _cached(self, jti: str) -> Optional[bool]:
        with self._lock:
            hit = self._cache.get(jti)
            if hit is None:
                return None
            revoked, expires = hit
            if self._clock() >= expires:
                del self._cache[jti]
                return None
            self._cache.move_to_end(jti)
            return revoked

    def _remember(self, jti: str, revoked: bool) -> None:
        with self._lock:
            self._cache[jti] = (revoked, self._clock() + self._ttl)
            self._cache.move_to_end(jti)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def invalidate(self, jti: Optional[str] = None) -> None:
        with self._lock:
            if jti is None:
                self._cache.clear()
            else:
                self._cache.pop(jti, None)

    async def is_revoked(self, jti: str) -> bool:
        cached = self._cached(jti)
        if cached is not None:
            return cached
        try:
            revoked = bool(await asyncio.wait_for(self._backend.is_revoked(jti), timeout=self._timeout))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._fail_open:
                logger.warning("revocation lookup failed, allowing token jti=%s: %r", jti, e)
                return False
            logger.error("revocation lookup failed, rejecting request jti=%s: %r", jti, e)
            raise GatewayError(
                ErrorCode.SERVICE_UNAVAILABLE,
                "Token revocation store is unavailable",
                details=type(e).__name__,
            ) from e
        self._remember(jti, revoked)
        return revoked

    async def close(self) -> None:
        await self._backend.close()


def create_revocation_store(settings: AuthSettings, backend=None) -> CachedRevocationStore:
    """
    根据配置创建吊销存储：
    - storeUri 为空：内存存储（单机）。
    - redis:// 或 rediss:// ：Redis 存储（多网关实例共享吊销集合）。
    两者都包装本地缓存与超时保护。
    """
    if backend is None:
        url = (settings.revocation_store_uri or "").strip()
        if url.startswith("redis://") or url.startswith("rediss://"):
            backend = RedisRevocationStore(url)
            logger.info("gateway revocation store: redis with local cache ttl=%ss", settings.revocation_cache_ttl_seconds)
        else:
            if url:
                logger.warning("unsupported revocation store uri, using memory: %s", url)
            backend = MemoryRevocationStore()
    return CachedRevocationStore(
        backend,
        cache_ttl_sec=settings.revocation_cache_ttl_seconds,
        timeout_ms=settings.revocation_timeout_ms,
        fail_open=settings.revocation_fail_open,
    )


__all__ = [
    "REVOKED_KEY_PREFIX",
    "MemoryRevocationStore",
    "RedisRevocationStore",
    "CachedRevocationStore",
    "create_revocation_store",
]
