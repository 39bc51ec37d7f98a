"""
网关单元测试公共 fixture：可控时钟、token 工厂、脚本化上游（httpx.MockTransport）、网关测试客户端。
"""
from __future__ import annotations

import copy
import os
import sys
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

JWT_SECRET = "unit-test-secret-key-0123456789-abcdefghijklmnop"
JWT_KID = "test"
WALL_START = 1_700_000_000.0


class FakeClock:
    """可手动推进的时钟。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedUpstream:
    """记录所有上游请求；按队列返回脚本化响应，队列为空时回显请求。"""

    def __init__(self) -> None:
        self.calls: List[httpx.Request] = []
        self._script: List[Callable[[httpx.Request], Any]] = []

    @staticmethod
    def echo(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "host": request.url.host,
            "path": request.url.path,
            "query": request.url.query.decode("ascii"),
            "headers": dict(request.headers),
        })

    def queue(self, *handlers: Callable[[httpx.Request], Any]) -> None:
        self._script.extend(handlers)

    def respond(self, status: int, times: int = 1, **kwargs: Any) -> None:
        for _ in range(times):
            self._script.append(lambda req, s=status, kw=kwargs: httpx.Response(s, **copy.deepcopy(kw)))

    def __call__(self, request: httpx.Request) -> Any:
        self.calls.append(request)
        handler = self._script.pop(0) if self._script else self.echo
        return handler(request)

    def hosts(self) -> List[str]:
        return [r.url.host for r in self.calls]


def base_config() -> Dict[str, Any]:
    return {
        "routes": [
            {
                "id": "users",
                "path": "/api/users/**",
                "uri": "lb://user-service",
                "rewrite": {"regex": "^/api/users/?(?<remaining>.*)$", "replacement": "/${remaining}"},
            },
            {
                "id": "products-public",
                "path": "/api/products/**",
                "methods": ["GET"],
                "service": "product-catalog",
                "authRequired": False,
                "rewrite": {"regex": "^/api/products/?(?<remaining>.*)$", "replacement": "/${remaining}"},
            },
            {
                "id": "products",
                "path": "/api/products/**",
                "service": "product-catalog",
                "roles": ["ADMIN", "MERCHANT"],
                "rewrite": {"regex": "^/api/products/?(?<remaining>.*)$", "replacement": "/${remaining}"},
            },
            {
                "id": "cart",
                "path": "/api/cart/**",
                "service": "shopping-cart",
                "rewrite": {"regex": "^/api/cart/?(?<remaining>.*)$", "replacement": "/${remaining}"},
            },
            {
                "id": "orders",
                "path": "/api/orders/**",
                "service": "order-service",
                "rewrite": {"regex": "^/api/orders/?(?<remaining>.*)$", "replacement": "/${remaining}"},
            },
            {
                "id": "payments",
                "path": "/api/payments/**",
                "service": "payment-service",
                "fallbackUri": "redirect:https://status.shop.example.com/payments",
            },
        ],
        "auth": {
            "jwt": {
                "clockSkewSeconds": 30,
                "keys": [{"kid": JWT_KID, "alg": "HS256", "secret": JWT_SECRET}],
            },
        },
        "cors": {
            "allowedOrigins": ["http://localhost:*", "https://shop.example.com"],
        },
        "http": {"retryAttempts": 2},
    }


DEFAULT_SERVICES = {
    "user-service": ["http://users-a:8081"],
    "product-catalog": ["http://catalog-a:8082", "http://catalog-b:8082"],
    "shopping-cart": ["http://cart-a:8083"],
    "order-service": ["http://orders-a:8084"],
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeClock(WALL_START)


@pytest.fixture
def make_token(wall_clock):
    """签发测试 token；claims 可覆盖，传 None 删除该声明。"""

    def _make(secret: str = JWT_SECRET, kid: Optional[str] = JWT_KID, alg: str = "HS256", **overrides: Any) -> str:
        now = int(wall_clock())
        claims: Dict[str, Any] = {
            "sub": "42",
            "username": "alice",
            "email": "alice@shop.example.com",
            "roles": ["USER"],
            "iat": now,
            "exp": now + 3600,
            "jti": str(uuid.uuid4()),
        }
        for k, v in overrides.items():
            if v is None:
                claims.pop(k, None)
            else:
                claims[k] = v
        headers = {"kid": kid} if kid else None
        return jwt.encode(claims, secret, algorithm=alg, headers=headers)

    return _make


@pytest.fixture
def upstream():
    return ScriptedUpstream()


@pytest.fixture
def make_gateway(upstream, clock, wall_clock):
    """按配置创建网关测试客户端；返回 (client, gateway)。"""
    from fastapi.testclient import TestClient

    from edge_platform.core.gateway.app import create_app
    from edge_platform.core.gateway.config import settings_from_dict
    from edge_platform.core.gateway.revocation import MemoryRevocationStore
    from edge_platform.core.registry.client import StaticRegistry

    clients = []

    def _make(
        config: Optional[Dict[str, Any]] = None,
        services: Optional[Dict[str, List[str]]] = None,
        revocation=None,
        settings=None,
    ):
        settings = settings or settings_from_dict(config or base_config(), apply_env=False)
        app = create_app(
            settings,
            registry=StaticRegistry(DEFAULT_SERVICES if services is None else services),
            revocation_store=revocation or MemoryRevocationStore(),
            transport=httpx.MockTransport(upstream),
            clock=clock,
            wall_clock=wall_clock,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, app.state.gateway

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture
def gateway_client(make_gateway):
    client, _gateway = make_gateway()
    return client


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
