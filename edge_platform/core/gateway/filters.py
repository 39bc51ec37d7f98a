"""
网关过滤器链：有序处理函数列表，每个处理函数接收 (exchange, next)，要么直接产出响应（短路），要么交给下一个。
顺序：关联 ID -> 访问记录 -> 错误信封 -> CORS -> 路由匹配 -> 认证/授权 -> 限流 -> 身份透传 -> 熔断门 -> 上游转发。
单个请求内副作用顺序固定：认证 -> 熔断门 -> 上游 -> 响应；身份头在上游调用开始前注入。
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import anyio
import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from starlette.requests import ClientDisconnect

from ..monitor.client import build_access_record, emit_access
from .auth import AuthorizationPolicy, IdentityContext, TokenValidator, propagate_identity
from .circuit_breaker import CircuitBreakerRegistry
from .cors import CorsPolicy, clean_response_headers, prepare_upstream_headers
from .correlation import CORRELATION_HEADER, correlation_id_ctx, resolve_correlation_id
from .errors import ErrorCode, GatewayError, TokenError, envelope_response, wrap_upstream_error
from .fallback import FallbackResponder
from .http_client import LoadBalancedClient, UpstreamRequest, UpstreamResult, raw_chunks
from .rate_limit import RateLimiter
from .routes import RouteRule, RouteTableHolder, rewrite_path

logger = logging.getLogger("gateway.filters")

CLIENT_CLOSED_REQUEST = 499

Headers = List[Tuple[str, str]]


@dataclass
class Exchange:
    """单个在途请求的上下文（请求信封）。"""

    request: Request
    method: str
    path: str
    query: str
    client_ip: str
    scheme: str
    host: str
    headers: Headers
    deadline: float
    correlation_id: str = ""
    started: float = field(default_factory=time.perf_counter)
    rule: Optional[RouteRule] = None
    identity: Optional[IdentityContext] = None
    upstream_path: str = ""
    instance: Optional[str] = None
    attempts: int = 0
    breaker_entry: Optional[str] = None
    breaker_exit: Optional[str] = None
    status: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    error_code: Optional[str] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    cors_applied: bool = False
    streaming: bool = False
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _settle: Optional[Callable[[str], None]] = field(default=None, repr=False)
    _on_finish: List[Callable[["Exchange", int], None]] = field(default_factory=list, repr=False)
    _finished: bool = field(default=False, repr=False)

    @classmethod
    def from_request(cls, request: Request, total_ms: int, clock: Callable[[], float] = time.monotonic) -> "Exchange":
        return cls(
            request=request,
            method=request.method.upper(),
            path=request.url.path,
            query=request.url.query,
            client_ip=request.client.host if request.client else "",
            scheme=request.url.scheme,
            host=request.headers.get("host", ""),
            headers=list(request.headers.items()),
            deadline=clock() + total_ms / 1000.0,
            clock=clock,
        )

    @property
    def latency_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def remaining(self) -> float:
        return max(0.0, self.deadline - self.clock())

    def bind_settle(self, settle: Callable[[str], None]) -> None:
        self._settle = settle

    def settle(self, outcome: str) -> None:
        """上报熔断结果：success / failure / ignored；每个请求只生效一次。"""
        if self._settle is not None:
            self._settle(outcome)

    def on_finish(self, callback: Callable[["Exchange", int], None]) -> None:
        self._on_finish.append(callback)

    def finish(self, status: int) -> None:
        if self._finished:
            return
        self._finished = True
        self.status = status
        for callback in self._on_finish:
            callback(self, status)


Next = Callable[[Exchange], Awaitable[Response]]
Handler = Callable[[Exchange, Next], Awaitable[Response]]


class FilterChain:
    def __init__(self, handlers: Sequence[Handler], terminal: Next) -> None:
        self._handlers = tuple(handlers)
        self._terminal = terminal

    async def __call__(self, exchange: Exchange) -> Response:
        return await self._dispatch(0, exchange)

    async def _dispatch(self, index: int, exchange: Exchange) -> Response:
        if index >= len(self._handlers):
            return await self._terminal(exchange)
        handler = self._handlers[index]
        return await handler(exchange, lambda ex: self._dispatch(index + 1, ex))


def _merge_vary(existing: Optional[str], value: str) -> str:
    if not existing:
        return value
    have = {v.strip().lower() for v in existing.split(",")}
    extra = [v.strip() for v in value.split(",") if v.strip().lower() not in have]
    return ", ".join([existing] + extra) if extra else existing


class CorrelationFilter:
    """分配/沿用关联 ID，写入日志上下文，并回写到每个响应（含错误与降级）。"""

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        ex.correlation_id, _accepted = resolve_correlation_id(ex.request.headers.get(CORRELATION_HEADER))
        # 每个请求运行在独立任务中，上下文随任务结束
        correlation_id_ctx.set(ex.correlation_id)
        resp = await nxt(ex)
        if ex.cors_applied:
            for key in [k for k in resp.headers.keys() if k.lower().startswith("access-control-")]:
                del resp.headers[key]
        for key, value in ex.response_headers.items():
            if key.lower() == "vary":
                resp.headers["Vary"] = _merge_vary(resp.headers.get("vary"), value)
            else:
                resp.headers[key] = value
        resp.headers[CORRELATION_HEADER] = ex.correlation_id
        return resp


class AccessLogFilter:
    """每个请求恰好一条访问记录；流式响应在响应体结束（或客户端断开）时记录。"""

    def __init__(self, metrics) -> None:
        self.metrics = metrics

    def _emit(self, ex: Exchange, status: int) -> None:
        rule = ex.rule
        emit_access(build_access_record(
            correlation_id=ex.correlation_id,
            method=ex.method,
            path=ex.path,
            status=status,
            latency_ms=ex.latency_ms,
            rule_id=rule.rule_id if rule else None,
            service=rule.service if rule else None,
            instance=ex.instance,
            attempts=ex.attempts,
            breaker_entry=ex.breaker_entry,
            breaker_exit=ex.breaker_exit,
            bytes_in=ex.bytes_in,
            bytes_out=ex.bytes_out,
            code=ex.error_code,
        ))
        self.metrics.record_request(rule.rule_id if rule else None, status)

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        ex.on_finish(self._emit)
        try:
            resp = await nxt(ex)
        except asyncio.CancelledError:
            ex.finish(CLIENT_CLOSED_REQUEST)
            raise
        if not ex.streaming:
            ex.finish(resp.status_code)
        return resp


class ErrorFilter:
    """网关内部错误 -> 统一错误信封；未预期异常 -> 500 INTERNAL_ERROR。"""

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        try:
            return await nxt(ex)
        except GatewayError as e:
            if e.status >= 500:
                logger.warning("%s %s -> %s %s: %s", ex.method, ex.path, e.status, e.code.code, e.message)
            else:
                logger.info("%s %s -> %s %s: %s", ex.method, ex.path, e.status, e.code.code, e.details or e.message)
            return self._envelope(ex, e)
        except Exception:
            logger.exception("unhandled gateway error %s %s", ex.method, ex.path)
            return self._envelope(ex, GatewayError(ErrorCode.INTERNAL_ERROR, "Internal gateway error"))

    @staticmethod
    def _envelope(ex: Exchange, err: GatewayError) -> Response:
        ex.error_code = err.code.code
        return envelope_response(err, ex.path, ex.method, ex.correlation_id)


class CorsFilter:
    """预检直接应答（不转发、不鉴权）；白名单来源的实际请求在响应上加 CORS 头。"""

    def __init__(self, policy: CorsPolicy) -> None:
        self.policy = policy

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        headers = ex.request.headers
        origin = headers.get("origin")
        if self.policy.is_preflight(ex.method, headers):
            requested_method = headers.get("access-control-request-method", "")
            requested_headers = headers.get("access-control-request-headers", "")
            if not self.policy.preflight_allowed(origin, requested_method, requested_headers):
                raise GatewayError(
                    ErrorCode.UNAUTHORIZED_ACCESS,
                    "CORS preflight rejected",
                    details=f"origin={origin} method={requested_method}",
                )
            return Response(status_code=204, headers=self.policy.preflight_headers(origin, requested_headers))
        if origin and self.policy.origin_allowed(origin):
            ex.response_headers.update(self.policy.response_headers(origin))
            ex.cors_applied = True
        return await nxt(ex)


class RouteFilter:
    def __init__(self, holder: RouteTableHolder) -> None:
        self.holder = holder

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        ex.rule = self.holder.current.require(ex.method, ex.path)
        return await nxt(ex)


class AuthFilter:
    """受保护规则：必须有合法 token 且角色满足；公开规则：合法 token 仍透传身份，非法 token 忽略。"""

    def __init__(self, validator: TokenValidator, policy: AuthorizationPolicy, metrics) -> None:
        self.validator = validator
        self.policy = policy
        self.metrics = metrics

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        rule = ex.rule
        authorization = ex.request.headers.get("authorization")
        if self.policy.requires_auth(rule):
            try:
                identity = await self.validator.validate_header(authorization)
            except TokenError as e:
                self.metrics.record_auth_failure(e.kind)
                raise
            try:
                self.policy.authorize(rule, identity)
            except GatewayError:
                self.metrics.record_auth_failure("forbidden")
                raise
            ex.identity = identity
        elif authorization:
            try:
                ex.identity = await self.validator.validate_header(authorization)
            except TokenError as e:
                logger.debug("ignoring invalid token on public route %s: %s", rule.rule_id, e.kind.value)
        return await nxt(ex)


class RateLimitFilter:
    def __init__(self, limiter: RateLimiter) -> None:
        self.limiter = limiter

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        if not self.limiter.enabled:
            return await nxt(ex)
        decision = self.limiter.allow(ex.client_ip, ex.identity.subject if ex.identity else None)
        if not decision.allowed:
            raise GatewayError(
                ErrorCode.RATE_LIMITED,
                "Too many requests, please retry later",
                details=decision.reason,
                headers={"Retry-After": str(decision.retry_after)},
            )
        ex.response_headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return await nxt(ex)


class IdentityFilter:
    """剥离入站 X-User-*，注入已校验身份。"""

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        ex.headers = propagate_identity(ex.headers, ex.identity)
        return await nxt(ex)


class BreakerFilter:
    """熔断门：OPEN 或探测名额耗尽时直接降级；放行请求的最终结果只记一次。"""

    def __init__(self, breakers: CircuitBreakerRegistry, fallback: FallbackResponder, metrics) -> None:
        self.breakers = breakers
        self.fallback = fallback
        self.metrics = metrics

    def _fallback(self, ex: Exchange, reason: str) -> Response:
        ex.error_code = ErrorCode.SERVICE_UNAVAILABLE.code
        return self.fallback.respond(ex.rule, ex.path, ex.method, ex.correlation_id, reason)

    async def __call__(self, ex: Exchange, nxt: Next) -> Response:
        rule = ex.rule
        breaker = self.breakers.get(rule.rule_id, rule.breaker, name=rule.breaker_name)
        ex.breaker_entry = breaker.state.value
        permit = breaker.try_acquire()
        if permit is None:
            self.metrics.record_rejected(rule.rule_id)
            ex.breaker_exit = breaker.state.value
            logger.info("circuit %s open, serving fallback for %s %s", breaker.name, ex.method, ex.path)
            return self._fallback(ex, "circuit_open")

        settled: List[str] = []

        def settle(outcome: str) -> None:
            if settled:
                return
            settled.append(outcome)
            if outcome == "success":
                breaker.on_success(permit)
            elif outcome == "failure":
                breaker.on_failure(permit)
            else:
                breaker.on_ignored(permit)
            ex.breaker_exit = breaker.state.value

        ex.bind_settle(settle)
        try:
            resp = await nxt(ex)
        except GatewayError as e:
            if e.code is ErrorCode.SERVICE_UNAVAILABLE:
                settle("failure")
                logger.warning("upstream %s unavailable (%s), serving fallback", rule.service, e.details)
                return self._fallback(ex, e.details or "upstream_unavailable")
            settle("failure" if e.code is ErrorCode.GATEWAY_TIMEOUT else "ignored")
            raise
        except BaseException:
            settle("ignored")
            raise
        if not ex.streaming:
            settle("ignored")
        return resp


def breaker_outcome(result: UpstreamResult) -> str:
    """5xx 记失败，2xx/3xx 记成功，4xx 不计入熔断窗口。"""
    if result.failed:
        return "failure"
    return "success" if result.status < 400 else "ignored"


def _encode_headers(headers: Headers) -> List[Tuple[bytes, bytes]]:
    return [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers]


class ProxyHandler:
    """链尾：路径重写 -> 负载均衡转发；总时限内等待上游，客户端断开则取消上游调用。"""

    def __init__(self, client: LoadBalancedClient, total_ms: int) -> None:
        self.client = client
        self.total_ms = total_ms

    async def _counting(self, ex: Exchange, stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for chunk in stream:
            ex.bytes_in += len(chunk)
            yield chunk

    async def _request_body(self, ex: Exchange) -> Tuple[Optional[bytes], Optional[AsyncIterator[bytes]]]:
        """长度已知且不超过阈值时整体读取（可重试），否则流式转发。"""
        headers = ex.request.headers
        length = headers.get("content-length")
        chunked = "chunked" in headers.get("transfer-encoding", "").lower()
        if length is None and not chunked:
            return None, None
        if length is not None and length.isdigit() and int(length) <= self.client.http.stream_threshold_bytes:
            body = await ex.request.body()
            ex.bytes_in = len(body)
            return body, None
        return None, self._counting(ex, ex.request.stream())

    async def _listen_for_disconnect(self, request: Request) -> None:
        """请求体已读完后，下一条 ASGI 消息只可能是 http.disconnect。"""
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    def _client_gone(self, ex: Exchange) -> Response:
        ex.settle("ignored")
        logger.info("client disconnected, upstream call to %s cancelled", ex.rule.service)
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    async def __call__(self, ex: Exchange) -> Response:
        rule = ex.rule
        ex.upstream_path = rewrite_path(rule, ex.path)
        headers = prepare_upstream_headers(ex.headers, ex.client_ip, ex.scheme, ex.host, ex.correlation_id)
        body, stream = await self._request_body(ex)
        upstream = UpstreamRequest(
            method=ex.method,
            path=ex.upstream_path,
            query=ex.query,
            headers=headers,
            body=body,
            stream=stream,
            idempotent_safe=rule.idempotent_safe,
        )
        outcome: Dict[str, Any] = {}

        async def call(scope: anyio.CancelScope) -> None:
            try:
                outcome["result"] = await self.client.send(rule.service, upstream)
            except Exception as e:
                outcome["error"] = e
            scope.cancel()

        async def listen(scope: anyio.CancelScope) -> None:
            await self._listen_for_disconnect(ex.request)
            outcome["disconnected"] = True
            scope.cancel()

        # 总时限与客户端断开都通过取消作用域结束上游调用
        with anyio.move_on_after(ex.remaining()):
            async with anyio.create_task_group() as tg:
                tg.start_soon(call, tg.cancel_scope)
                if stream is None:
                    tg.start_soon(listen, tg.cancel_scope)

        result: Optional[UpstreamResult] = outcome.get("result")
        if outcome.get("disconnected"):
            if result is not None and not result.buffered:
                with anyio.CancelScope(shield=True):
                    await result.response.aclose()
            return self._client_gone(ex)
        error = outcome.get("error")
        if isinstance(error, ClientDisconnect):
            return self._client_gone(ex)
        if error is not None:
            raise error
        if result is None:
            ex.settle("failure")
            raise GatewayError(
                ErrorCode.GATEWAY_TIMEOUT,
                f"Service {rule.service} did not respond within the request budget",
                details=f"total budget {self.total_ms}ms exceeded",
            )
        return self._respond(ex, result)

    def _respond(self, ex: Exchange, result: UpstreamResult) -> Response:
        ex.instance = result.instance.instance_id
        ex.attempts = result.attempts
        ex.status = result.status
        headers = clean_response_headers(result.headers(), drop_cors=ex.cors_applied)

        if result.buffered:
            ex.settle(breaker_outcome(result))
            ex.bytes_out = len(result.body)
            encoding = result.response.headers.get("content-encoding", "").lower()
            wrapped = None
            if not result.body or encoding in ("", "identity"):
                wrapped = wrap_upstream_error(result.status, result.body, result.response.headers.get("content-type", ""))
            if wrapped is not None:
                ex.error_code = wrapped.code.code
                return envelope_response(wrapped, ex.path, ex.method, ex.correlation_id)
            resp = Response(content=result.body, status_code=result.status)
            if ex.method != "HEAD":
                headers = [(k, v) for k, v in headers if k.lower() != "content-length"]
                headers.append(("content-length", str(len(result.body))))
            resp.raw_headers = _encode_headers(headers)
            return resp

        ex.streaming = True
        resp = StreamingResponse(self._relay(ex, result), status_code=result.status)
        resp.raw_headers = _encode_headers(headers)
        return resp

    async def _relay(self, ex: Exchange, result: UpstreamResult) -> AsyncIterator[bytes]:
        completed = broken = False
        try:
            async for chunk in raw_chunks(result.response):
                ex.bytes_out += len(chunk)
                yield chunk
            completed = True
        except httpx.HTTPError as e:
            broken = True
            logger.warning("upstream stream from %s broke after %s bytes: %r", ex.instance, ex.bytes_out, e)
            raise
        finally:
            if completed:
                ex.settle(breaker_outcome(result))
                ex.finish(result.status)
            else:
                ex.settle("failure" if broken else "ignored")
                ex.finish(502 if broken else CLIENT_CLOSED_REQUEST)
            # 断开时外层作用域已取消，关闭上游连接需屏蔽取消
            with anyio.CancelScope(shield=True):
                await result.response.aclose()


__all__ = [
    "Exchange",
    "FilterChain",
    "CorrelationFilter",
    "AccessLogFilter",
    "ErrorFilter",
    "CorsFilter",
    "RouteFilter",
    "AuthFilter",
    "RateLimitFilter",
    "IdentityFilter",
    "BreakerFilter",
    "ProxyHandler",
    "breaker_outcome",
    "CLIENT_CLOSED_REQUEST",
]
