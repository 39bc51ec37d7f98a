"""
降级响应：熔断打开或上游不可达时按规则 fallbackUri 应答。
- forward:/fallback/<name>：内置处理器，503 SERVICE_UNAVAILABLE 信封。
- redirect:<url> 或绝对 http(s) URL：303 See Other + Location，仍带信封与关联 ID。
"""
from __future__ import annotations

from typing import Optional

from fastapi.responses import Response

from .errors import ErrorCode, GatewayError, envelope_response

FORWARD_PREFIX = "forward:"
REDIRECT_PREFIX = "redirect:"
FALLBACK_PATH_PREFIX = "/fallback/"


def redirect_target(fallback_uri: str) -> Optional[str]:
    if fallback_uri.startswith(REDIRECT_PREFIX):
        return fallback_uri[len(REDIRECT_PREFIX):].strip() or None
    if fallback_uri.startswith("http://") or fallback_uri.startswith("https://"):
        return fallback_uri
    return None


def fallback_name(fallback_uri: str, service: str) -> str:
    """forward:/fallback/users -> users；无法解析时用服务名。"""
    if fallback_uri.startswith(FORWARD_PREFIX):
        path = fallback_uri[len(FORWARD_PREFIX):]
        if path.startswith(FALLBACK_PATH_PREFIX) and len(path) > len(FALLBACK_PATH_PREFIX):
            return path[len(FALLBACK_PATH_PREFIX):].strip("/")
    return service


def unavailable_error(name: str, reason: str) -> GatewayError:
    return GatewayError(
        ErrorCode.SERVICE_UNAVAILABLE,
        f"Service {name} is temporarily unavailable, please try again later",
        details=reason,
    )


class FallbackResponder:
    def respond(self, rule, path: str, method: str, correlation_id: str, reason: str) -> Response:
        target = redirect_target(rule.fallback_uri)
        if target:
            err = GatewayError(
                ErrorCode.SERVICE_UNAVAILABLE,
                f"Service {rule.service} is temporarily unavailable, see fallback location",
                details=reason,
                status=303,
                headers={"Location": target},
            )
        else:
            err = unavailable_error(fallback_name(rule.fallback_uri, rule.service), reason)
        return envelope_response(err, path, method, correlation_id)


__all__ = ["FallbackResponder", "redirect_target", "fallback_name", "unavailable_error"]
