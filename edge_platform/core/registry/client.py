"""
服务发现客户端：逻辑服务名 -> 实例快照。
- 发现源可插拔：StaticRegistry（配置/环境变量）、HttpRegistry（外部注册中心）、DnsRegistry（A/AAAA 解析）。
- ServiceResolver 统一持有 TTL 缓存（默认 10s）；过期读取或订阅事件触发刷新，同一服务的并发刷新合并为一次。
- 快照为不可变元组，整体替换；消失的实例在宽限期内保留为 down，超期后删除。
- 快照为空时抛 SERVICE_UNAVAILABLE（no_instances），在熔断器之内计为失败。
"""
from __future__ import annotations

import asyncio
import logging
import socket
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx

from ..gateway.errors import ErrorCode, GatewayError

logger = logging.getLogger("gateway.registry")

ChangeListener = Callable[[str], None]


@dataclass(frozen=True)
class ServiceInstance:
    service: str
    host: str
    port: int
    scheme: str = "http"
    healthy: bool = True
    last_seen: float = 0.0

    @property
    def instance_id(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.scheme}://{host}:{self.port}"

    def with_health(self, healthy: bool) -> "ServiceInstance":
        return replace(self, healthy=healthy)

    @classmethod
    def from_url(cls, service: str, url: str, last_seen: Optional[float] = None) -> "ServiceInstance":
        """http://host:port -> ServiceInstance；缺省端口按 scheme 取 80/443。"""
        parts = urlsplit(url if "://" in url else f"http://{url}")
        if not parts.hostname:
            raise ValueError(f"invalid instance url for {service}: {url}")
        scheme = parts.scheme or "http"
        port = parts.port or (443 if scheme == "https" else 80)
        return cls(service, parts.hostname, port, scheme, True, time.time() if last_seen is None else last_seen)

    @classmethod
    def from_dict(cls, service: str, data: Dict[str, Any]) -> "ServiceInstance":
        return cls(
            service=service,
            host=str(data["host"]),
            port=int(data["port"]),
            scheme=str(data.get("scheme") or "http"),
            healthy=bool(data.get("healthy", True)),
            last_seen=float(data.get("lastSeen", data.get("last_seen", time.time())) or 0.0),
        )


class _Subscribers:
    """name -> 回调列表；线程安全。"""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[ChangeListener]] = {}
        self._lock = threading.Lock()

    def add(self, name: str, listener: ChangeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(name, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                items = self._listeners.get(name, [])
                if listener in items:
                    items.remove(listener)

        return _unsubscribe

    def fire(self, name: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(name, []))
        for listener in listeners:
            try:
                listener(name)
            except Exception:
                logger.exception("discovery listener failed for %s", name)


class StaticRegistry:
    """静态服务表：服务名 -> 实例列表（来自配置或 SERVICE_<NAME>_URL）；支持运行期注册/注销并通知订阅者。"""

    def __init__(self, services: Optional[Dict[str, Sequence[str]]] = None) -> None:
        self._services: Dict[str, Tuple[ServiceInstance, ...]] = {}
        self._lock = threading.Lock()
        self._subscribers = _Subscribers()
        for name, urls in (services or {}).items():
            self._services[name] = tuple(ServiceInstance.from_url(name, u) for u in urls)

    def set_instances(self, name: str, instances: Iterable[Any]) -> None:
        """整体替换某服务的实例（接受 URL 字符串或 ServiceInstance）。"""
        items = tuple(i if isinstance(i, ServiceInstance) else ServiceInstance.from_url(name, str(i)) for i in instances)
        with self._lock:
            self._services[name] = items
        self._subscribers.fire(name)

    def register(self, name: str, url: str) -> None:
        inst = ServiceInstance.from_url(name, url)
        with self._lock:
            current = [i for i in self._services.get(name, ()) if i.instance_id != inst.instance_id]
            self._services[name] = tuple(current + [inst])
        self._subscribers.fire(name)

    def deregister(self, name: str, url: Optional[str] = None) -> None:
        with self._lock:
            if url is None:
                self._services.pop(name, None)
            else:
                gone = ServiceInstance.from_url(name, url).instance_id
                self._services[name] = tuple(i for i in self._services.get(name, ()) if i.instance_id != gone)
        self._subscribers.fire(name)

    def list_services(self) -> List[str]:
        with self._lock:
            return list(self._services.keys())

    async def lookup(self, name: str) -> List[ServiceInstance]:
        with self._lock:
            return list(self._services.get(name, ()))

    def subscribe(self, name: str, listener: ChangeListener) -> Callable[[], None]:
        return self._subscribers.add(name, listener)

    async def close(self) -> None:
        return None


class HttpRegistry:
    """外部注册中心：GET {registry_uri}/services/{name}/instances -> [{host, port, scheme, healthy, lastSeen}]。
    无推送通道，变更依赖 TTL 刷新；notify() 供外部事件源（如 webhook）触发刷新。
    """

    def __init__(self, registry_uri: str, client: Optional[httpx.AsyncClient] = None, timeout_sec: float = 2.0) -> None:
        self._base = registry_uri.rstrip("/")
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._subscribers = _Subscribers()

    async def lookup(self, name: str) -> List[ServiceInstance]:
        resp = await self._client.get(f"{self._base}/services/{name}/instances")
        if resp.status_code == 404:
            return []
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            data = data.get("instances", [])
        return [ServiceInstance.from_dict(name, item) for item in data or []]

    def subscribe(self, name: str, listener: ChangeListener) -> Callable[[], None]:
        return self._subscribers.add(name, listener)

    def notify(self, name: str) -> None:
        self._subscribers.fire(name)

    async def close(self) -> None:
        if self._own_client:
            await self._client.aclose()


class DnsRegistry:
    """DNS 发现：解析服务名的 A/AAAA 记录，实例端口固定。"""

    def __init__(self, port: int = 80, scheme: str = "http", suffix: str = "") -> None:
        self._port = port
        self._scheme = scheme
        self._suffix = suffix
        self._subscribers = _Subscribers()

    async def lookup(self, name: str) -> List[ServiceInstance]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(name + self._suffix, self._port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.info("dns lookup found nothing for %s: %s", name, e)
            return []
        now = time.time()
        seen = set()
        out: List[ServiceInstance] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            host = sockaddr[0]
            if host in seen:
                continue
            seen.add(host)
            out.append(ServiceInstance(name, host, self._port, self._scheme, True, now))
        return out

    def subscribe(self, name: str, listener: ChangeListener) -> Callable[[], None]:
        return self._subscribers.add(name, listener)

    async def close(self) -> None:
        return None


@dataclass(frozen=True)
class Snapshot:
    service: str
    instances: Tuple[ServiceInstance, ...]
    fetched_at: float

    def healthy(self) -> Tuple[ServiceInstance, ...]:
        return tuple(i for i in self.instances if i.healthy)


class ServiceResolver:
    """服务名 -> 实例快照；缓存与 TTL 只在此处维护。"""

    def __init__(
        self,
        registry,
        cache_ttl_seconds: float = 10,
        grace_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
        health=None,
    ) -> None:
        self.registry = registry
        self.cache_ttl_seconds = cache_ttl_seconds
        self.grace_seconds = grace_seconds
        self.health = health
        self._clock = clock
        self._snapshots: Dict[str, Snapshot] = {}
        self._stale: Dict[str, bool] = {}
        self._vanished: Dict[str, Dict[str, Tuple[ServiceInstance, float]]] = {}
        self._inflight: Dict[str, "asyncio.Future[Snapshot]"] = {}
        self._unsubscribe: Dict[str, Callable[[], None]] = {}
        self.lookups = 0

    # ---------- 订阅 ----------

    def _ensure_subscribed(self, name: str) -> None:
        if name in self._unsubscribe:
            return
        subscribe = getattr(self.registry, "subscribe", None)
        if callable(subscribe):
            self._unsubscribe[name] = subscribe(name, self.invalidate)
        else:
            self._unsubscribe[name] = lambda: None

    def invalidate(self, name: str) -> None:
        """订阅事件：标记快照过期，下一次读取时刷新。"""
        self._stale[name] = True

    # ---------- 读取 ----------

    def snapshot(self, name: str) -> Optional[Snapshot]:
        return self._snapshots.get(name)

    def snapshots(self) -> Dict[str, Snapshot]:
        return dict(self._snapshots)

    def _fresh(self, snap: Optional[Snapshot]) -> bool:
        if snap is None or self._stale.get(snap.service):
            return False
        return self._clock() - snap.fetched_at < self.cache_ttl_seconds

    async def lookup(self, name: str) -> Snapshot:
        snap = self._snapshots.get(name)
        if self._fresh(snap):
            return snap
        return await self.refresh(name)

    async def resolve(self, name: str) -> Tuple[ServiceInstance, ...]:
        """返回可用实例（注册中心健康且未被健康检查摘除）；为空抛 SERVICE_UNAVAILABLE。"""
        snap = await self.lookup(name)
        instances = snap.healthy()
        if self.health is not None:
            instances = tuple(i for i in instances if self.health.is_healthy(i))
        if not instances:
            raise GatewayError(
                ErrorCode.SERVICE_UNAVAILABLE,
                f"No instances available for service {name}",
                details="no_instances",
            )
        return instances

    # ---------- 刷新（同服务单飞） ----------

    async def refresh(self, name: str) -> Snapshot:
        pending = self._inflight.get(name)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # 发起刷新的请求已被取消，由当前请求重新刷新
                return await self.refresh(name)
        loop = asyncio.get_running_loop()
        fut: "asyncio.Future[Snapshot]" = loop.create_future()
        self._inflight[name] = fut
        try:
            snap = await self._fetch(name)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # 无等待者时避免 "exception never retrieved"
            fut.exception()
            raise
        else:
            fut.set_result(snap)
            return snap
        finally:
            self._inflight.pop(name, None)

    async def _fetch(self, name: str) -> Snapshot:
        self._ensure_subscribed(name)
        self._stale[name] = False
        self.lookups += 1
        try:
            found = await self.registry.lookup(name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            old = self._snapshots.get(name)
            if old is not None:
                logger.warning("discovery lookup failed for %s, serving last snapshot: %r", name, e)
                return old
            logger.warning("discovery lookup failed for %s: %r", name, e)
            raise GatewayError(
                ErrorCode.SERVICE_UNAVAILABLE,
                f"Service discovery failed for {name}",
                details="discovery_error",
            ) from e
        snap = Snapshot(name, self._merge(name, found), self._clock())
        self._snapshots[name] = snap
        logger.debug("discovery snapshot %s: %s", name, [i.instance_id for i in snap.instances])
        return snap

    def _merge(self, name: str, found: Sequence[ServiceInstance]) -> Tuple[ServiceInstance, ...]:
        """新结果 + 宽限期内消失的实例（标记 down）。"""
        now = self._clock()
        current = {i.instance_id: i for i in found}
        vanished = self._vanished.setdefault(name, {})
        for inst_id in list(vanished):
            if inst_id in current:
                del vanished[inst_id]
        old = self._snapshots.get(name)
        if old is not None:
            for inst in old.instances:
                if inst.instance_id not in current and inst.instance_id not in vanished:
                    vanished[inst.instance_id] = (inst.with_health(False), now)
        kept = []
        for inst_id, (inst, since) in list(vanished.items()):
            if now - since > self.grace_seconds:
                del vanished[inst_id]
                logger.info("instance %s of %s dropped after grace period", inst_id, name)
            else:
                kept.append(inst)
        return tuple(found) + tuple(kept)

    def known_instances(self) -> List[ServiceInstance]:
        out: List[ServiceInstance] = []
        for snap in self._snapshots.values():
            out.extend(i for i in snap.instances if i.healthy)
        return out

    async def close(self) -> None:
        for unsubscribe in self._unsubscribe.values():
            unsubscribe()
        self._unsubscribe.clear()
        await self.registry.close()


def create_registry(discovery, client: Optional[httpx.AsyncClient] = None):
    """按配置选择发现源：registryUri -> HttpRegistry；dnsPort -> DnsRegistry；否则 StaticRegistry。"""
    if discovery.registry_uri:
        logger.info("service discovery: http registry %s", discovery.registry_uri)
        return HttpRegistry(discovery.registry_uri, client=client)
    if discovery.dns_port:
        logger.info("service discovery: dns on port %s", discovery.dns_port)
        return DnsRegistry(port=discovery.dns_port)
    logger.info("service discovery: static %s", sorted(discovery.static))
    return StaticRegistry(discovery.static)


__all__ = [
    "ServiceInstance",
    "StaticRegistry",
    "HttpRegistry",
    "DnsRegistry",
    "Snapshot",
    "ServiceResolver",
    "create_registry",
]
