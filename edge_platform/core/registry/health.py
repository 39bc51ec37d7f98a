"""
上游实例主动健康检查（可选，discovery.healthCheck.enabled）。
对已缓存的实例周期性 GET {base_url}{path}，连续失败 N 次摘除，成功一次恢复。
ServiceResolver 在选择实例前通过 is_healthy 过滤。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional

import httpx

from .client import ServiceInstance

logger = logging.getLogger("gateway.registry.health")


class HealthChecker:
    """按实例（host:port）记录连续失败次数；未检查过的实例视为健康。"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        interval_sec: float = 10,
        failure_threshold: int = 3,
        timeout_sec: float = 2,
        path: str = "/health",
    ) -> None:
        self.interval_sec = interval_sec
        self.failure_threshold = max(1, failure_threshold)
        self.timeout_sec = timeout_sec
        self.path = path if path.startswith("/") else "/" + path
        self._client = client
        self._own_client = client is None
        self._healthy: Dict[str, bool] = {}
        self._failures: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._client

    async def _do_check(self, instance: ServiceInstance) -> bool:
        try:
            resp = await self._http().get(instance.base_url + self.path, timeout=self.timeout_sec)
            return 200 <= resp.status_code < 300
        except httpx.HTTPError as e:
            logger.debug("health check failed for %s: %r", instance.instance_id, e)
            return False

    async def check_one(self, instance: ServiceInstance) -> bool:
        ok = await self._do_check(instance)
        key = instance.instance_id
        before = self._healthy.get(key, True)
        if not ok:
            self._failures[key] = self._failures.get(key, 0) + 1
            self._healthy[key] = self._failures[key] < self.failure_threshold
        else:
            self._failures[key] = 0
            self._healthy[key] = True
        if before != self._healthy[key]:
            logger.info(
                "instance %s of %s marked %s",
                key, instance.service, "up" if self._healthy[key] else "down",
            )
        return self._healthy[key]

    def is_healthy(self, instance: ServiceInstance) -> bool:
        return self._healthy.get(instance.instance_id, True)

    async def check_all(self, instances: Iterable[ServiceInstance]) -> None:
        items = list(instances)
        if items:
            await asyncio.gather(*(self.check_one(i) for i in items))

    def start(self, get_instances: Callable[[], Iterable[ServiceInstance]]) -> None:
        """后台任务周期性检查；get_instances() 返回当前缓存的实例。"""

        async def _loop() -> None:
            while True:
                try:
                    await self.check_all(get_instances())
                except Exception:
                    logger.exception("health check round failed")
                await asyncio.sleep(self.interval_sec)

        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["HealthChecker"]
