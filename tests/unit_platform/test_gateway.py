"""
网关端到端单元测试（TestClient + 脚本化上游）：认证、路由、身份透传、熔断与降级、CORS、头部卫生、
错误信封、超时、限流、访问记录与管理端点。
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import uuid

import httpx
import yaml

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from conftest import WALL_START, base_config, bearer
from edge_platform.core.gateway.config import load_settings
from edge_platform.core.gateway.correlation import is_well_formed
from edge_platform.core.gateway.revocation import MemoryRevocationStore


def _assert_envelope(resp, code, status, path, method="GET"):
    assert resp.status_code == status
    assert resp.headers["content-type"].startswith("application/json")
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == code
    assert body["status"] == status
    assert body["path"] == path
    assert body["method"] == method
    assert body["correlationId"] == resp.headers["X-Correlation-Id"]
    assert body["timestamp"].endswith("Z")
    return body


def _refuse(request):
    raise httpx.ConnectError("connection refused", request=request)


# ---------- 认证与授权 ----------

def test_missing_token_rejected_before_upstream(gateway_client, upstream):
    resp = gateway_client.get("/api/orders/15")
    body = _assert_envelope(resp, "INVALID_TOKEN", 401, "/api/orders/15")
    assert body["message"] == "JWT token is missing"
    assert upstream.calls == []


def test_expired_token_rejected(gateway_client, upstream, make_token):
    token = make_token(exp=int(WALL_START) - 3600)
    resp = gateway_client.get("/api/orders/15", headers=bearer(token))
    body = _assert_envelope(resp, "INVALID_TOKEN", 401, "/api/orders/15")
    assert "expired" in body["message"]
    assert upstream.calls == []


def test_revoked_token_rejected(make_gateway, upstream, make_token):
    store = MemoryRevocationStore()
    store.revoke("revoked-jti")
    client, _ = make_gateway(revocation=store)
    resp = client.get("/api/orders/15", headers=bearer(make_token(jti="revoked-jti")))
    body = _assert_envelope(resp, "INVALID_TOKEN", 401, "/api/orders/15")
    assert "revoked" in body["message"]
    assert upstream.calls == []


def test_insufficient_role_is_403(gateway_client, upstream, make_token):
    resp = gateway_client.post("/api/products", json={"name": "lamp"}, headers=bearer(make_token()))
    _assert_envelope(resp, "UNAUTHORIZED_ACCESS", 403, "/api/products", "POST")
    assert upstream.calls == []

    resp = gateway_client.post("/api/products", json={"name": "lamp"}, headers=bearer(make_token(roles=["MERCHANT"])))
    assert resp.status_code == 200
    assert json.loads(upstream.calls[0].content) == {"name": "lamp"}


def test_small_json_bodies_forwarded_for_write_methods(gateway_client, upstream, make_token):
    headers = bearer(make_token())
    for i, method in enumerate(["POST", "PUT", "PATCH"]):
        resp = gateway_client.request(method, "/api/cart/items", json={"sku": "A-1", "qty": i + 1}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["path"] == "/items"
        assert json.loads(upstream.calls[i].content) == {"sku": "A-1", "qty": i + 1}


def test_public_route_ignores_invalid_token(gateway_client, upstream):
    resp = gateway_client.get("/api/products/7", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 200
    assert upstream.calls[0].headers.get("x-user-id") is None


# ---------- 路由、重写与身份透传 ----------

def test_identity_injected_and_spoofed_headers_stripped(gateway_client, upstream, make_token):
    token = make_token(roles=["USER", "MERCHANT"])
    resp = gateway_client.get(
        "/api/orders/15?expand=items",
        headers={**bearer(token), "X-User-Id": "999", "X-User-Roles": "ADMIN"},
    )
    assert resp.status_code == 200
    sent = upstream.calls[0]
    assert sent.url.host == "orders-a"
    assert sent.url.path == "/15"
    assert sent.url.query == b"expand=items"
    assert sent.headers.get_list("x-user-id") == ["42"]
    assert sent.headers.get_list("x-user-roles") == ["USER,MERCHANT"]
    assert sent.headers["x-user-username"] == "alice"
    assert sent.headers["x-user-email"] == "alice@shop.example.com"
    assert sent.headers["authorization"] == f"Bearer {token}"


def test_round_robin_and_correlation_round_trip(gateway_client, upstream):
    cid = str(uuid.uuid4())
    first = gateway_client.get("/api/products/7", headers={"X-Correlation-Id": cid})
    second = gateway_client.get("/api/products/7", headers={"X-Correlation-Id": cid})
    assert upstream.hosts() == ["catalog-a", "catalog-b"]
    assert first.headers["X-Correlation-Id"] == cid
    assert second.headers["X-Correlation-Id"] == cid
    assert all(c.headers["x-correlation-id"] == cid for c in upstream.calls)
    assert first.json()["path"] == "/7"


def test_malformed_correlation_id_is_replaced(gateway_client, upstream):
    resp = gateway_client.get("/api/products/7", headers={"X-Correlation-Id": "not valid!!"})
    cid = resp.headers["X-Correlation-Id"]
    assert cid != "not valid!!"
    assert is_well_formed(cid)
    assert upstream.calls[0].headers.get_list("x-correlation-id") == [cid]


def test_unknown_route_is_404(gateway_client, upstream):
    resp = gateway_client.delete("/api/unknown/1")
    body = _assert_envelope(resp, "ROUTE_NOT_FOUND", 404, "/api/unknown/1", "DELETE")
    assert body["error"] == "Not Found"
    assert upstream.calls == []


def test_hop_by_hop_headers_stripped_and_forwarded_headers_set(gateway_client, upstream):
    upstream.queue(lambda req: httpx.Response(
        200, json={"ok": True}, headers={"Keep-Alive": "timeout=5", "X-Upstream": "catalog"},
    ))
    resp = gateway_client.get("/api/products/7", headers={
        "Connection": "keep-alive, X-Hop",
        "X-Hop": "1",
        "Keep-Alive": "timeout=5",
        "Proxy-Authorization": "Basic Zm9vOmJhcg==",
        "X-Forwarded-For": "10.1.1.1",
    })
    sent = upstream.calls[0].headers
    for name in ("x-hop", "keep-alive", "proxy-authorization"):
        assert name not in sent
    assert sent["x-forwarded-for"] == "10.1.1.1, testclient"
    assert sent["x-forwarded-proto"] == "http"
    assert sent["x-forwarded-host"] == "testserver"
    assert resp.headers["x-upstream"] == "catalog"
    assert "keep-alive" not in resp.headers


# ---------- 上游错误 ----------

def test_upstream_json_error_passes_through(gateway_client, upstream, make_token):
    upstream.respond(409, json={"code": "CART_LOCKED", "message": "cart is locked"})
    resp = gateway_client.put("/api/cart/items/3", json={"qty": 2}, headers=bearer(make_token()))
    assert resp.status_code == 409
    assert resp.json() == {"code": "CART_LOCKED", "message": "cart is locked"}


def test_upstream_empty_error_is_wrapped(gateway_client, upstream, make_token):
    upstream.respond(400)
    resp = gateway_client.get("/api/cart/items", headers=bearer(make_token()))
    body = _assert_envelope(resp, "UPSTREAM_ERROR", 400, "/api/cart/items")
    assert "400" in body["message"]


def test_upstream_html_error_is_wrapped(gateway_client, upstream, make_token):
    upstream.respond(404, text="<h1>Not Found</h1>")
    resp = gateway_client.get("/api/cart/items/99", headers=bearer(make_token()))
    body = _assert_envelope(resp, "ROUTE_NOT_FOUND", 404, "/api/cart/items/99")
    assert "Not Found" in body["details"]


def test_unreachable_upstream_serves_fallback(gateway_client, upstream, make_token):
    upstream.queue(_refuse, _refuse)
    resp = gateway_client.get("/api/orders/15", headers=bearer(make_token()))
    body = _assert_envelope(resp, "SERVICE_UNAVAILABLE", 503, "/api/orders/15")
    assert body["message"] == "Service order-service is temporarily unavailable, please try again later"
    assert len(upstream.calls) == 2


def test_post_not_retried_on_connect_error(gateway_client, upstream, make_token):
    upstream.queue(_refuse)
    resp = gateway_client.post("/api/orders", json={"sku": "A-1"}, headers=bearer(make_token()))
    assert resp.status_code == 503
    assert len(upstream.calls) == 1


def test_total_budget_exceeded_is_504(make_gateway, upstream, make_token):
    config = base_config()
    config["timeouts"] = {"totalMs": 200}
    client, gateway = make_gateway(config)

    async def slow(request):
        await asyncio.sleep(2)
        return httpx.Response(200, json={})

    upstream.queue(slow)
    resp = client.get("/api/orders/15", headers=bearer(make_token()))
    body = _assert_envelope(resp, "GATEWAY_TIMEOUT", 504, "/api/orders/15")
    assert "order-service" in body["message"]
    assert gateway.breakers.get("orders").snapshot()["failures"] == 1


def test_redirect_fallback_when_no_instances(gateway_client, upstream, make_token):
    resp = gateway_client.get("/api/payments/7", headers=bearer(make_token()), follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "https://status.shop.example.com/payments"
    assert resp.json()["code"] == "SERVICE_UNAVAILABLE"
    assert resp.json()["details"] == "no_instances"
    assert upstream.calls == []


def test_builtin_fallback_endpoint(gateway_client):
    resp = gateway_client.get("/fallback/orders")
    body = _assert_envelope(resp, "SERVICE_UNAVAILABLE", 503, "/fallback/orders")
    assert "orders" in body["message"]


# ---------- 熔断 ----------

def _single_attempt_gateway(make_gateway):
    config = base_config()
    config["http"] = {"retryAttempts": 1}
    return make_gateway(config)


def _trip_orders(client, upstream, token):
    upstream.respond(500, times=10, json={"message": "db down"})
    for _ in range(10):
        resp = client.get("/api/orders/15", headers=bearer(token))
        assert resp.status_code == 500
        assert resp.json() == {"message": "db down"}


def test_breaker_opens_after_failures(make_gateway, upstream, make_token):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    _trip_orders(client, upstream, token)
    assert len(upstream.calls) == 10

    resp = client.get("/api/orders/15", headers=bearer(token))
    body = _assert_envelope(resp, "SERVICE_UNAVAILABLE", 503, "/api/orders/15")
    assert body["details"] == "circuit_open"
    assert len(upstream.calls) == 10
    assert gateway.breakers.states()["orders"] == "OPEN"

    # 其他规则不受影响
    assert client.get("/api/cart/items", headers=bearer(token)).status_code == 200

    metrics = client.get("/gateway/metrics").json()
    assert metrics["breakerRejected"] == {"orders": 1}
    assert {"breaker": "ordersCircuitBreaker", "from": "CLOSED", "to": "OPEN", "count": 1} in metrics["breakerTransitions"]


def test_breaker_closes_after_successful_probes(make_gateway, upstream, make_token, clock):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    _trip_orders(client, upstream, token)

    clock.advance(29)
    assert client.get("/api/orders/15", headers=bearer(token)).status_code == 503
    clock.advance(1)
    for _ in range(3):
        assert client.get("/api/orders/15", headers=bearer(token)).status_code == 200
    assert gateway.breakers.states()["orders"] == "CLOSED"
    assert client.get("/api/orders/15", headers=bearer(token)).status_code == 200
    assert len(upstream.calls) == 14


def test_failed_probe_reopens_breaker(make_gateway, upstream, make_token, clock):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    _trip_orders(client, upstream, token)
    clock.advance(30)
    upstream.respond(503)
    assert client.get("/api/orders/15", headers=bearer(token)).status_code == 503
    assert gateway.breakers.states()["orders"] == "OPEN"
    assert client.get("/api/orders/15", headers=bearer(token)).json()["details"] == "circuit_open"


def test_client_errors_do_not_trip_breaker(make_gateway, upstream, make_token):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    upstream.respond(404, times=12, json={"message": "no such order"})
    for _ in range(12):
        assert client.get("/api/orders/404", headers=bearer(token)).status_code == 404
    assert gateway.breakers.states()["orders"] == "CLOSED"


def test_client_errors_do_not_count_toward_breaker_window(make_gateway, upstream, make_token):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    upstream.respond(500, times=5, json={"message": "db down"})
    upstream.respond(404, times=5, json={"message": "no such order"})
    statuses = [client.get("/api/orders/15", headers=bearer(token)).status_code for _ in range(10)]
    assert statuses == [500] * 5 + [404] * 5
    snap = gateway.breakers.get("orders").snapshot()
    assert snap["state"] == "CLOSED"
    assert snap["window"] == 5
    assert snap["failures"] == 5


def test_client_errors_in_half_open_do_not_close_breaker(make_gateway, upstream, make_token, clock):
    client, gateway = _single_attempt_gateway(make_gateway)
    token = make_token()
    _trip_orders(client, upstream, token)
    clock.advance(30)
    upstream.respond(404, times=4, json={"message": "no such order"})
    for _ in range(4):
        assert client.get("/api/orders/404", headers=bearer(token)).status_code == 404
    assert gateway.breakers.states()["orders"] == "HALF_OPEN"
    for _ in range(3):
        assert client.get("/api/orders/15", headers=bearer(token)).status_code == 200
    assert gateway.breakers.states()["orders"] == "CLOSED"


# ---------- CORS ----------

def test_preflight_answered_without_upstream(gateway_client, upstream):
    resp = gateway_client.options("/api/cart/items", headers={
        "Origin": "http://localhost:3000",
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "Authorization, Content-Type",
    })
    assert resp.status_code == 204
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "POST" in resp.headers["access-control-allow-methods"]
    assert resp.headers["access-control-allow-credentials"] == "true"
    assert resp.headers["access-control-max-age"] == "3600"
    assert is_well_formed(resp.headers["X-Correlation-Id"])
    assert upstream.calls == []


def test_preflight_from_unknown_origin_rejected(gateway_client, upstream):
    resp = gateway_client.options("/api/cart/items", headers={
        "Origin": "https://evil.example.com",
        "Access-Control-Request-Method": "POST",
    })
    _assert_envelope(resp, "UNAUTHORIZED_ACCESS", 403, "/api/cart/items", "OPTIONS")
    assert "access-control-allow-origin" not in resp.headers
    assert upstream.calls == []


def test_cors_headers_on_actual_request(gateway_client, upstream):
    upstream.queue(lambda req: httpx.Response(
        200, json={"ok": True}, headers={"Access-Control-Allow-Origin": "*", "Vary": "Accept-Encoding"},
    ))
    resp = gateway_client.get("/api/products/7", headers={"Origin": "https://shop.example.com"})
    assert resp.headers["access-control-allow-origin"] == "https://shop.example.com"
    assert resp.headers["access-control-expose-headers"] == "X-Correlation-Id"
    assert resp.headers["vary"] == "Accept-Encoding, Origin"


def test_cors_headers_on_error_envelope(gateway_client):
    resp = gateway_client.get("/api/orders/1", headers={"Origin": "http://localhost:5173"})
    assert resp.status_code == 401
    assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_unlisted_origin_gets_no_cors_headers(gateway_client, upstream):
    resp = gateway_client.get("/api/products/7", headers={"Origin": "https://evil.example.com"})
    assert resp.status_code == 200
    assert "access-control-allow-origin" not in resp.headers


# ---------- 流式转发 ----------

def test_large_response_is_streamed(make_gateway, upstream, caplog):
    config = base_config()
    config["http"] = {"streamThresholdBytes": 16}

    async def chunks():
        for i in range(3):
            yield b"chunk-%d;" % i

    upstream.queue(lambda req: httpx.Response(200, content=chunks(), headers={"Content-Type": "text/plain"}))
    client, _ = make_gateway(config)
    caplog.set_level(logging.INFO, logger="gateway.access")
    resp = client.get("/api/products/export")
    assert resp.status_code == 200
    assert resp.content == b"chunk-0;chunk-1;chunk-2;"
    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "gateway.access"]
    assert len(records) == 1
    assert records[0]["bytesOut"] == len(resp.content)
    assert records[0]["breakerExit"] == "CLOSED"


def test_large_request_body_is_streamed(make_gateway, upstream, make_token):
    config = base_config()
    config["http"] = {"streamThresholdBytes": 16}
    client, _ = make_gateway(config)
    payload = b"x" * 100
    resp = client.post("/api/cart/import", content=payload, headers={**bearer(make_token()), "Content-Type": "text/plain"})
    assert resp.status_code == 200
    assert upstream.calls[0].content == payload


# ---------- 限流 ----------

def test_rate_limit_per_ip(make_gateway, upstream):
    config = base_config()
    config["rateLimit"] = {"enabled": True, "perIpPerMinute": 2}
    client, _ = make_gateway(config)
    first = client.get("/api/products/1")
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert client.get("/api/products/2").status_code == 200
    resp = client.get("/api/products/3")
    body = _assert_envelope(resp, "RATE_LIMITED", 429, "/api/products/3")
    assert body["details"] == "RATE_LIMIT_IP"
    assert resp.headers["Retry-After"] == "60"
    assert len(upstream.calls) == 2


# ---------- 访问记录 ----------

def test_exactly_one_access_record_per_request(gateway_client, make_token, caplog):
    caplog.set_level(logging.INFO, logger="gateway.access")
    ok = gateway_client.get("/api/products/7")
    denied = gateway_client.get("/api/orders/1")
    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "gateway.access"]
    assert len(records) == 2
    first, second = records
    assert first["correlationId"] == ok.headers["X-Correlation-Id"]
    assert first["rule"] == "products-public"
    assert first["service"] == "product-catalog"
    assert first["instance"] == "catalog-a:8082"
    assert first["attempts"] == 1
    assert first["status"] == 200
    assert first["breakerEntry"] == "CLOSED"
    assert second["correlationId"] == denied.headers["X-Correlation-Id"]
    assert second["status"] == 401
    assert second["code"] == "INVALID_TOKEN"
    assert second["instance"] is None


# ---------- 管理端点 ----------

def test_health_and_routes_endpoints(gateway_client):
    health = gateway_client.get("/health").json()
    assert health["status"] == "UP"
    assert health["routes"] == 6
    assert health["breakers"]["orders"] == "CLOSED"

    routes = gateway_client.get("/gateway/routes").json()
    assert routes["total"] == 6
    ids = [r["id"] for r in routes["routes"]]
    assert ids[:2] == ["users", "products-public"]


def test_metrics_count_requests_and_auth_failures(gateway_client):
    gateway_client.get("/api/products/7")
    gateway_client.get("/api/orders/1")
    metrics = gateway_client.get("/gateway/metrics").json()
    assert {"rule": "products-public", "status": 200, "count": 1} in metrics["requests"]
    assert metrics["authFailures"] == {"missing": 1}


def _write_config(path, routes):
    doc = base_config()
    doc["routes"] = routes
    path.write_text(yaml.safe_dump(doc), encoding="utf-8")


def test_route_reload_swaps_table(make_gateway, upstream, make_token, tmp_path, monkeypatch):
    monkeypatch.delenv("GATEWAY_JWT_SECRET", raising=False)
    path = tmp_path / "gateway.yaml"
    _write_config(path, base_config()["routes"])
    client, gateway = make_gateway(settings=load_settings(str(path), apply_env=False))
    admin = bearer(make_token(roles=["ADMIN"]))
    assert client.get("/api/cart/items", headers=admin).status_code == 200

    _write_config(path, [r for r in base_config()["routes"] if r["id"] != "cart"])
    assert client.post("/gateway/routes/reload").status_code == 401
    assert client.post("/gateway/routes/reload", headers=bearer(make_token())).status_code == 403

    resp = client.post("/gateway/routes/reload", headers=admin)
    assert resp.json() == {"success": True, "routes": 5}
    assert client.get("/api/cart/items", headers=admin).status_code == 404
    assert "cart" not in gateway.breakers.states()


def test_route_reload_rejects_invalid_config(make_gateway, make_token, tmp_path, monkeypatch):
    monkeypatch.delenv("GATEWAY_JWT_SECRET", raising=False)
    path = tmp_path / "gateway.yaml"
    _write_config(path, base_config()["routes"])
    client, gateway = make_gateway(settings=load_settings(str(path), apply_env=False))

    routes = base_config()["routes"]
    routes.append(dict(routes[0]))
    _write_config(path, routes)
    resp = client.post("/gateway/routes/reload", headers=bearer(make_token(roles=["ADMIN"])))
    body = _assert_envelope(resp, "INTERNAL_ERROR", 500, "/gateway/routes/reload", "POST")
    assert "duplicate route id" in body["details"]
    assert len(gateway.routes.current) == 6


def test_route_reload_rejects_bad_numeric_value(make_gateway, make_token, tmp_path, monkeypatch):
    monkeypatch.delenv("GATEWAY_JWT_SECRET", raising=False)
    path = tmp_path / "gateway.yaml"
    _write_config(path, base_config()["routes"])
    client, gateway = make_gateway(settings=load_settings(str(path), apply_env=False))

    doc = base_config()
    doc["timeouts"] = {"totalMs": "soon"}
    path.write_text(yaml.safe_dump(doc), encoding="utf-8")
    resp = client.post("/gateway/routes/reload", headers=bearer(make_token(roles=["ADMIN"])))
    body = _assert_envelope(resp, "INTERNAL_ERROR", 500, "/gateway/routes/reload", "POST")
    assert "invalid gateway config value" in body["details"]
    assert len(gateway.routes.current) == 6


def test_reload_without_config_file(gateway_client, make_token):
    resp = gateway_client.post("/gateway/routes/reload", headers=bearer(make_token(roles=["ADMIN"])))
    assert resp.status_code == 500
    assert resp.json()["message"] == "Route reload failed"
