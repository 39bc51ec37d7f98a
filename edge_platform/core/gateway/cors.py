"""
CORS 与头部卫生
- 预检（OPTIONS + Origin + Access-Control-Request-Method）由网关直接应答，不转发、不鉴权；非白名单来源返回 403。
- 白名单来源支持 * 通配（如 http://localhost:*）。
- 逐跳头（Connection/Keep-Alive/Proxy-*/TE/Trailer(s)/Transfer-Encoding/Upgrade 及 Connection 中列出的头）在两段链路上都剥离。
- 转发时追加 X-Forwarded-For，设置 X-Forwarded-Proto / X-Forwarded-Host。
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Pattern, Set, Tuple

from .config import CorsSettings

Headers = List[Tuple[str, str]]

HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def _connection_tokens(headers: Iterable[Tuple[str, str]]) -> Set[str]:
    out: Set[str] = set()
    for k, v in headers:
        if k.lower() == "connection":
            out.update(t.strip().lower() for t in v.split(",") if t.strip())
    return out


def is_hop_by_hop(name: str, extra: Iterable[str] = ()) -> bool:
    lower = name.lower()
    return lower in HOP_BY_HOP or lower.startswith("proxy-") or lower in extra


def strip_hop_by_hop(headers: Iterable[Tuple[str, str]]) -> Headers:
    headers = list(headers)
    listed = _connection_tokens(headers)
    return [(k, v) for k, v in headers if not is_hop_by_hop(k, listed)]


def prepare_upstream_headers(
    headers: Iterable[Tuple[str, str]],
    client_ip: str,
    scheme: str,
    host: str,
    correlation_id: str,
    correlation_header: str = "X-Correlation-Id",
) -> Headers:
    """入站头 -> 上游请求头：剥离逐跳头与 Host，设置关联 ID 与 X-Forwarded-*。"""
    out: Headers = []
    forwarded_for = []
    has_proto = has_host = False
    for k, v in strip_hop_by_hop(headers):
        lower = k.lower()
        if lower in ("host", correlation_header.lower()):
            continue
        if lower == "x-forwarded-for":
            forwarded_for.append(v)
            continue
        if lower == "x-forwarded-proto":
            has_proto = True
        elif lower == "x-forwarded-host":
            has_host = True
        out.append((k, v))
    if client_ip:
        forwarded_for.append(client_ip)
    if forwarded_for:
        out.append(("X-Forwarded-For", ", ".join(forwarded_for)))
    if not has_proto and scheme:
        out.append(("X-Forwarded-Proto", scheme))
    if not has_host and host:
        out.append(("X-Forwarded-Host", host))
    out.append((correlation_header, correlation_id))
    return out


def clean_response_headers(headers: Iterable[Tuple[str, str]], drop_cors: bool = False) -> Headers:
    """上游响应头 -> 客户端：剥离逐跳头；网关负责 CORS 时丢弃上游 Access-Control-*。"""
    out = strip_hop_by_hop(headers)
    if drop_cors:
        out = [(k, v) for k, v in out if not k.lower().startswith("access-control-")]
    return out


def _origin_pattern(origin: str) -> Pattern[str]:
    return re.compile("^" + re.escape(origin.rstrip("/")).replace(r"\*", ".*") + "$", re.IGNORECASE)


class CorsPolicy:
    """按配置判断来源/方法/头，并生成 CORS 响应头。"""

    def __init__(self, settings: Optional[CorsSettings] = None) -> None:
        self.settings = settings or CorsSettings()
        self._any_origin = "*" in self.settings.allowed_origins
        self._patterns = [_origin_pattern(o) for o in self.settings.allowed_origins if o != "*"]
        self._methods = {m.upper() for m in self.settings.allowed_methods}
        self._any_header = "*" in self.settings.allowed_headers
        self._headers = {h.lower() for h in self.settings.allowed_headers}

    @property
    def enabled(self) -> bool:
        return bool(self.settings.allowed_origins)

    def origin_allowed(self, origin: Optional[str]) -> bool:
        if not origin:
            return False
        if self._any_origin:
            return True
        origin = origin.rstrip("/")
        return any(p.match(origin) for p in self._patterns)

    @staticmethod
    def is_preflight(method: str, headers) -> bool:
        return (
            method.upper() == "OPTIONS"
            and bool(headers.get("origin"))
            and bool(headers.get("access-control-request-method"))
        )

    def preflight_allowed(self, origin: str, request_method: str, request_headers: str) -> bool:
        if not self.origin_allowed(origin):
            return False
        if request_method.upper() not in self._methods:
            return False
        if self._any_header:
            return True
        wanted = [h.strip().lower() for h in (request_headers or "").split(",") if h.strip()]
        return all(h in self._headers for h in wanted)

    def preflight_headers(self, origin: str, request_headers: str = "") -> Dict[str, str]:
        allow_headers = ", ".join(self.settings.allowed_headers)
        if self._any_header:
            allow_headers = request_headers or "*"
        out = {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": ", ".join(self.settings.allowed_methods),
            "Access-Control-Allow-Headers": allow_headers,
            "Access-Control-Max-Age": str(self.settings.max_age_seconds),
            "Vary": "Origin, Access-Control-Request-Method, Access-Control-Request-Headers",
        }
        if self.settings.allow_credentials:
            out["Access-Control-Allow-Credentials"] = "true"
        return out

    def response_headers(self, origin: str) -> Dict[str, str]:
        out = {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
        if self.settings.allow_credentials:
            out["Access-Control-Allow-Credentials"] = "true"
        if self.settings.exposed_headers:
            out["Access-Control-Expose-Headers"] = ", ".join(self.settings.exposed_headers)
        return out


__all__ = [
    "HOP_BY_HOP",
    "CorsPolicy",
    "is_hop_by_hop",
    "strip_hop_by_hop",
    "prepare_upstream_headers",
    "clean_response_headers",
]
