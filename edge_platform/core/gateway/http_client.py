"""
负载均衡上游客户端（httpx.AsyncClient 连接池复用）。
- 选择：同一服务的健康实例间轮询；重试预算默认 2 次，每次换下一个实例。
- 仅幂等方法（或规则标记 idempotentSafe）重试；流式请求体不可重放，从不重试。
- 单次尝试超时：connect 默认 5s、read 默认 30s。
- 大于阈值（默认 1 MiB）或长度未知的请求/响应体流式转发，不整体缓冲。
- 连接失败、超时、5xx 计为上游故障；4xx 为客户端可见错误，不计故障。重试耗尽抛 SERVICE_UNAVAILABLE。
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterator, List, Optional, Tuple

import anyio
import httpx

from ..registry.client import ServiceInstance
from .config import HttpSettings, TimeoutSettings
from .errors import ErrorCode, GatewayError

logger = logging.getLogger("gateway.http_client")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE"})

# httpx 客户端默认头不向上游注入，只转发入站头
_CLIENT_DEFAULT_HEADERS = ("Accept", "Accept-Encoding", "User-Agent")


@dataclass
class UpstreamRequest:
    method: str
    path: str
    query: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    idempotent_safe: bool = False

    @property
    def streamed(self) -> bool:
        return self.stream is not None

    def target(self, instance: ServiceInstance) -> str:
        return instance.base_url + self.path + (f"?{self.query}" if self.query else "")


@dataclass
class UpstreamResult:
    response: httpx.Response
    instance: ServiceInstance
    attempts: int
    failed: bool
    body: Optional[bytes] = None

    @property
    def status(self) -> int:
        return self.response.status_code

    @property
    def buffered(self) -> bool:
        return self.body is not None

    def headers(self) -> List[Tuple[str, str]]:
        return list(self.response.headers.multi_items())


async def raw_chunks(resp: httpx.Response) -> AsyncIterator[bytes]:
    """响应体原始字节（不解压）；传输层已预读的响应直接返回其内容。"""
    if resp.is_stream_consumed:
        yield resp.content
        return
    async for chunk in resp.aiter_raw():
        yield chunk


class LoadBalancedClient:
    """服务名 -> 实例选择 -> 转发；实例列表来自 ServiceResolver。"""

    def __init__(
        self,
        resolver,
        http: Optional[HttpSettings] = None,
        timeouts: Optional[TimeoutSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.resolver = resolver
        self.http = http or HttpSettings()
        self.timeouts = timeouts or TimeoutSettings()
        self._timeout = httpx.Timeout(
            self.timeouts.read_ms / 1000.0,
            connect=self.timeouts.connect_ms / 1000.0,
        )
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=self._timeout,
            limits=httpx.Limits(max_connections=self.http.max_connections),
            follow_redirects=False,
        )
        for name in _CLIENT_DEFAULT_HEADERS:
            self._client.headers.pop(name, None)
        self._rr: Dict[str, Iterator[int]] = {}
        logger.info(
            "gateway http client created connect=%sms read=%sms max_connections=%s",
            self.timeouts.connect_ms, self.timeouts.read_ms, self.http.max_connections,
        )

    def _next_index(self, service: str) -> int:
        counter = self._rr.get(service)
        if counter is None:
            counter = self._rr.setdefault(service, itertools.count())
        return next(counter)

    def attempts_for(self, req: UpstreamRequest) -> int:
        if req.streamed:
            return 1
        if req.method.upper() in IDEMPOTENT_METHODS or req.idempotent_safe:
            return max(1, self.http.retry_attempts)
        return 1

    def _should_buffer(self, method: str, resp: httpx.Response) -> bool:
        if method.upper() == "HEAD" or resp.status_code in (204, 304):
            return True
        length = resp.headers.get("content-length")
        if length is not None and length.isdigit():
            return int(length) <= self.http.stream_threshold_bytes
        # 长度未知：错误响应需检查响应体，其余流式转发
        return resp.status_code >= 400

    async def _read_raw(self, resp: httpx.Response) -> bytes:
        chunks = []
        total = 0
        try:
            async for chunk in raw_chunks(resp):
                chunks.append(chunk)
                total += len(chunk)
                if total > self.http.stream_threshold_bytes and resp.status_code >= 400:
                    break
        finally:
            with anyio.CancelScope(shield=True):
                await resp.aclose()
        return b"".join(chunks)

    async def send(self, service: str, req: UpstreamRequest) -> UpstreamResult:
        instances = await self.resolver.resolve(service)
        allowed = self.attempts_for(req)
        start = self._next_index(service)
        last_exc: Optional[Exception] = None
        for attempt in range(allowed):
            instance = instances[(start + attempt) % len(instances)]
            request = self._client.build_request(
                req.method,
                req.target(instance),
                headers=req.headers,
                content=req.stream if req.streamed else req.body,
                timeout=self._timeout,
            )
            try:
                resp = await self._client.send(request, stream=True)
            except httpx.TransportError as e:
                last_exc = e
                logger.warning(
                    "upstream attempt %s/%s %s %s via %s failed: %r",
                    attempt + 1, allowed, req.method, service, instance.instance_id, e,
                )
                continue
            failed = resp.status_code >= 500
            if failed and attempt + 1 < allowed:
                await resp.aclose()
                logger.warning(
                    "upstream attempt %s/%s %s %s via %s returned %s",
                    attempt + 1, allowed, req.method, service, instance.instance_id, resp.status_code,
                )
                continue
            body = None
            if self._should_buffer(req.method, resp):
                try:
                    body = await self._read_raw(resp)
                except httpx.TransportError as e:
                    last_exc = e
                    logger.warning("upstream body read from %s failed: %r", instance.instance_id, e)
                    continue
            return UpstreamResult(resp, instance, attempt + 1, failed, body)
        raise GatewayError(
            ErrorCode.SERVICE_UNAVAILABLE,
            f"Service {service} is unavailable",
            details=f"{type(last_exc).__name__}: {last_exc}" if last_exc else "upstream_unreachable",
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["LoadBalancedClient", "raw_chunks", "UpstreamRequest", "UpstreamResult", "IDEMPOTENT_METHODS"]
