"""
电商 API 网关（所有内部服务的唯一 HTTP 入口）。
- 动态路由 + 路径重写、JWT 认证与角色授权、身份头透传、按规则熔断与降级、服务发现 + 负载均衡转发。
- 统一错误信封与关联 ID；每个请求一条结构化访问记录。
- 管理端点（不走路由、不记访问日志）：/health、/gateway/routes、/gateway/metrics、POST /gateway/routes/reload。
"""
from __future__ import annotations

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response

from ..monitor.golden_metrics import GatewayMetrics
from ..registry.client import ServiceResolver, create_registry
from ..registry.health import HealthChecker
from .auth import AuthorizationPolicy, TokenValidator
from .circuit_breaker import CircuitBreakerRegistry
from .config import GatewaySettings, load_settings
from .correlation import CORRELATION_HEADER, correlation_id_ctx, resolve_correlation_id
from .cors import CorsPolicy
from .errors import JSON_CONTENT_TYPE, ConfigError, ErrorCode, GatewayError, envelope_response
from .fallback import FallbackResponder, unavailable_error
from .filters import (
    AccessLogFilter,
    AuthFilter,
    BreakerFilter,
    CorrelationFilter,
    CorsFilter,
    ErrorFilter,
    Exchange,
    FilterChain,
    IdentityFilter,
    ProxyHandler,
    RateLimitFilter,
    RouteFilter,
)
from .http_client import LoadBalancedClient
from .rate_limit import RateLimiter
from .revocation import create_revocation_store
from .routes import RouteTable, RouteTableHolder, build_route_table

logger = logging.getLogger("gateway")

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


class Gateway:
    """网关运行期对象：持有路由表、熔断器注册表、发现与转发客户端，并组装过滤器链。"""

    def __init__(
        self,
        settings: GatewaySettings,
        registry=None,
        revocation_store=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.metrics = GatewayMetrics()
        self.breakers = CircuitBreakerRegistry(clock=clock, on_transition=self.metrics.record_transition)
        self.routes = RouteTableHolder(build_route_table(settings.routes, settings.breaker))
        self.breakers.sync(self.routes.current.rules)

        disc = settings.discovery
        self.health: Optional[HealthChecker] = None
        if disc.health_check.enabled:
            hc = disc.health_check
            self.health = HealthChecker(
                interval_sec=hc.interval_seconds,
                failure_threshold=hc.failure_threshold,
                timeout_sec=hc.timeout_seconds,
                path=hc.path,
            )
        self.resolver = ServiceResolver(
            registry if registry is not None else create_registry(disc),
            cache_ttl_seconds=disc.cache_ttl_seconds,
            grace_seconds=disc.grace_seconds,
            clock=clock,
            health=self.health,
        )
        self.revocation = create_revocation_store(settings.auth, backend=revocation_store)
        self.validator = TokenValidator(settings.auth, self.revocation, clock=wall_clock)
        self.policy = AuthorizationPolicy()
        self.client = LoadBalancedClient(self.resolver, settings.http, settings.timeouts, transport=transport)
        self.chain = FilterChain(
            [
                CorrelationFilter(),
                AccessLogFilter(self.metrics),
                ErrorFilter(),
                CorsFilter(CorsPolicy(settings.cors)),
                RouteFilter(self.routes),
                AuthFilter(self.validator, self.policy, self.metrics),
                RateLimitFilter(RateLimiter(settings.rate_limit, clock=clock)),
                IdentityFilter(),
                BreakerFilter(self.breakers, FallbackResponder(), self.metrics),
            ],
            ProxyHandler(self.client, settings.timeouts.total_ms),
        )
        logger.info("gateway ready: %s routes", len(self.routes.current))

    async def handle(self, request: Request) -> Response:
        ex = Exchange.from_request(request, self.settings.timeouts.total_ms, clock=self._clock)
        return await self.chain(ex)

    def reload(self, settings: Optional[GatewaySettings] = None) -> RouteTable:
        """重新加载路由并整表原子替换；存活规则的熔断状态保留。"""
        if settings is None:
            path = self.settings.source_path
            if not path:
                raise ConfigError("gateway was not started from a configuration file")
            if not os.path.isfile(path):
                raise ConfigError(f"gateway config not found: {path}")
            settings = load_settings(path)
        table = build_route_table(settings.routes, settings.breaker)
        self.routes.swap(table)
        self.breakers.sync(table.rules)
        self.settings.routes = settings.routes
        logger.info("route table reloaded: %s routes", len(table))
        return table

    def status(self) -> Dict[str, Any]:
        return {
            "status": "UP",
            "routes": len(self.routes.current),
            "breakers": self.breakers.states(),
        }

    async def start(self) -> None:
        if self.health is not None:
            self.health.start(self.resolver.known_instances)

    async def close(self) -> None:
        if self.health is not None:
            await self.health.stop()
        await self.client.aclose()
        await self.resolver.close()
        await self.revocation.close()


def _correlation(request: Request) -> str:
    cid, _ = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
    correlation_id_ctx.set(cid)
    return cid


def _json(payload: Any, correlation_id: str, status: int = 200) -> Response:
    return Response(
        json.dumps(payload, ensure_ascii=False),
        status_code=status,
        media_type=JSON_CONTENT_TYPE,
        headers={CORRELATION_HEADER: correlation_id},
    )


def _error(err: GatewayError, request: Request, correlation_id: str) -> Response:
    return envelope_response(
        err, request.url.path, request.method, correlation_id,
        headers={CORRELATION_HEADER: correlation_id},
    )


def create_app(
    settings: Optional[GatewaySettings] = None,
    registry=None,
    revocation_store=None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
    wall_clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    创建网关 FastAPI 应用。
    - settings：为空时按 GATEWAY_CONFIG_PATH 加载。
    - registry：服务发现源（StaticRegistry/HttpRegistry/DnsRegistry 或任何实现 lookup/subscribe 的对象）；为空按配置创建。
    - revocation_store：吊销集合后端；为空按 auth.revocation.storeUri 创建。
    - transport：上游 httpx 传输层（测试注入 httpx.MockTransport）。
    - clock / wall_clock：单调时钟（熔断、缓存、时限）与墙上时钟（token exp）。
    """
    settings = settings or load_settings()
    gateway = Gateway(
        settings,
        registry=registry,
        revocation_store=revocation_store,
        transport=transport,
        clock=clock,
        wall_clock=wall_clock,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await gateway.start()
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(
        title="E-commerce API Gateway",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.gateway = gateway

    @app.get("/health")
    async def health(request: Request):
        cid = _correlation(request)
        return _json(gateway.status(), cid)

    @app.get("/gateway/routes")
    async def list_routes(request: Request):
        cid = _correlation(request)
        rules = [r.to_dict() for r in gateway.routes.current.rules]
        return _json({"routes": rules, "total": len(rules)}, cid)

    @app.get("/gateway/metrics")
    async def metrics(request: Request):
        cid = _correlation(request)
        return _json(gateway.metrics.snapshot(), cid)

    @app.post("/gateway/routes/reload")
    async def reload_routes(request: Request):
        """重新读取配置文件并原子替换路由表；需 admin.roles 之一。"""
        cid = _correlation(request)
        try:
            identity = await gateway.validator.validate_header(request.headers.get("authorization"))
            gateway.policy.authorize_roles(gateway.settings.admin_roles, identity)
            table = gateway.reload()
        except GatewayError as e:
            return _error(e, request, cid)
        except ConfigError as e:
            logger.error("route reload failed: %s", e)
            return _error(GatewayError(ErrorCode.INTERNAL_ERROR, "Route reload failed", details=str(e)), request, cid)
        logger.info("route table reloaded by %s", identity.subject)
        return _json({"success": True, "routes": len(table)}, cid)

    @app.api_route("/fallback/{name}", methods=ALL_METHODS, include_in_schema=False)
    async def fallback(name: str, request: Request):
        cid = _correlation(request)
        return _error(unavailable_error(name, "fallback"), request, cid)

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def proxy(request: Request):
        return await gateway.handle(request)

    return app


__all__ = ["Gateway", "create_app", "ALL_METHODS"]
