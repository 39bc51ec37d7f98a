"""
负载均衡客户端单元测试：轮询、连接失败换实例重试、5xx 重试、非幂等不重试、响应体缓冲与流式。
"""
from __future__ import annotations

import asyncio
import os
import sys

import httpx
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from conftest import FakeClock, ScriptedUpstream
from edge_platform.core.gateway.config import HttpSettings
from edge_platform.core.gateway.errors import ErrorCode, GatewayError
from edge_platform.core.gateway.http_client import LoadBalancedClient, UpstreamRequest
from edge_platform.core.registry.client import ServiceResolver, StaticRegistry

SERVICES = {"product-catalog": ["http://catalog-a:8082", "http://catalog-b:8082"]}


def _client(upstream, **http):
    resolver = ServiceResolver(StaticRegistry(SERVICES), clock=FakeClock())
    return LoadBalancedClient(resolver, HttpSettings(**http), transport=httpx.MockTransport(upstream))


def _run(client, *requests):
    async def scenario():
        try:
            return [await client.send("product-catalog", r) for r in requests]
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def _refuse(request):
    raise httpx.ConnectError("connection refused", request=request)


def test_round_robin_across_instances():
    upstream = ScriptedUpstream()
    results = _run(_client(upstream), *[UpstreamRequest("GET", "/items") for _ in range(4)])
    assert upstream.hosts() == ["catalog-a", "catalog-b", "catalog-a", "catalog-b"]
    assert all(r.attempts == 1 and not r.failed for r in results)


def test_target_keeps_query_string():
    upstream = ScriptedUpstream()
    _run(_client(upstream), UpstreamRequest("GET", "/items", query="page=2&size=10"))
    assert str(upstream.calls[0].url) == "http://catalog-a:8082/items?page=2&size=10"


def test_connect_error_retries_next_instance():
    upstream = ScriptedUpstream()
    upstream.queue(_refuse)
    (result,) = _run(_client(upstream), UpstreamRequest("GET", "/items"))
    assert upstream.hosts() == ["catalog-a", "catalog-b"]
    assert result.attempts == 2
    assert result.instance.host == "catalog-b"
    assert result.status == 200


def test_retries_exhausted_raise_service_unavailable():
    upstream = ScriptedUpstream()
    upstream.queue(_refuse, _refuse)
    with pytest.raises(GatewayError) as exc:
        _run(_client(upstream), UpstreamRequest("GET", "/items"))
    assert exc.value.code is ErrorCode.SERVICE_UNAVAILABLE
    assert "ConnectError" in exc.value.details


def test_server_error_retried_then_returned_as_failed():
    upstream = ScriptedUpstream()
    upstream.respond(500, times=2, json={"message": "boom"})
    (result,) = _run(_client(upstream), UpstreamRequest("GET", "/items"))
    assert len(upstream.calls) == 2
    assert result.failed is True
    assert result.status == 500
    assert b"boom" in result.body


def test_client_error_is_not_retried():
    upstream = ScriptedUpstream()
    upstream.respond(404, json={"message": "no such product"})
    (result,) = _run(_client(upstream), UpstreamRequest("GET", "/items/9"))
    assert len(upstream.calls) == 1
    assert result.failed is False
    assert result.status == 404


def test_post_is_not_retried():
    upstream = ScriptedUpstream()
    upstream.queue(_refuse)
    with pytest.raises(GatewayError):
        _run(_client(upstream), UpstreamRequest("POST", "/items", body=b"{}"))
    assert len(upstream.calls) == 1


def test_idempotent_safe_post_is_retried():
    upstream = ScriptedUpstream()
    upstream.queue(_refuse)
    (result,) = _run(_client(upstream), UpstreamRequest("POST", "/items", body=b"{}", idempotent_safe=True))
    assert result.attempts == 2


def test_streamed_request_body_is_forwarded_once():
    upstream = ScriptedUpstream()

    async def body():
        yield b"part-1,"
        yield b"part-2"

    client = _client(upstream)
    req = UpstreamRequest("PUT", "/items/1", body=None, stream=body())
    assert client.attempts_for(req) == 1
    _run(client, req)
    assert upstream.calls[0].content == b"part-1,part-2"


def test_small_response_is_buffered_and_large_is_streamed():
    upstream = ScriptedUpstream()
    upstream.respond(200, content=b"x" * 10)
    upstream.respond(200, content=b"y" * 100)
    small, large = _run(_client(upstream, stream_threshold_bytes=64),
                        UpstreamRequest("GET", "/a"), UpstreamRequest("GET", "/b"))
    assert small.buffered and small.body == b"x" * 10
    assert not large.buffered


def test_client_default_headers_are_not_injected():
    upstream = ScriptedUpstream()
    _run(_client(upstream), UpstreamRequest("GET", "/items", headers=[("X-Correlation-Id", "abc")]))
    sent = upstream.calls[0].headers
    assert "user-agent" not in sent
    assert sent["x-correlation-id"] == "abc"
