"""
网关统一错误模型与错误信封。
- 错误种类为固定词表（ErrorCode），每种自带 HTTP 状态码；网关内部抛出 GatewayError，在出口统一转为信封。
- 信封字段：success/code/message/status/error/path/method/timestamp/correlationId/details/validationErrors。
- 上游错误响应体为空或非 JSON 时，按上游状态码包装为信封。
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, List, Optional

from fastapi.responses import Response

JSON_CONTENT_TYPE = "application/json; charset=utf-8"


class ErrorCode(Enum):
    """稳定错误码 -> 默认 HTTP 状态。"""

    ROUTE_NOT_FOUND = ("ROUTE_NOT_FOUND", 404)
    INVALID_TOKEN = ("INVALID_TOKEN", 401)
    UNAUTHORIZED_ACCESS = ("UNAUTHORIZED_ACCESS", 403)
    SERVICE_UNAVAILABLE = ("SERVICE_UNAVAILABLE", 503)
    GATEWAY_TIMEOUT = ("GATEWAY_TIMEOUT", 504)
    RATE_LIMITED = ("RATE_LIMITED", 429)
    INTERNAL_ERROR = ("INTERNAL_ERROR", 500)
    # 仅用于包装上游 4xx 的空/非 JSON 响应
    UPSTREAM_ERROR = ("UPSTREAM_ERROR", 400)

    def __init__(self, code: str, status: int) -> None:
        self.code = code
        self.status = status


class TokenErrorKind(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    SIGNATURE = "signature"
    EXPIRED = "expired"
    REVOKED = "revoked"


_TOKEN_MESSAGES = {
    TokenErrorKind.MISSING: "JWT token is missing",
    TokenErrorKind.MALFORMED: "JWT token is malformed",
    TokenErrorKind.SIGNATURE: "JWT signature is invalid",
    TokenErrorKind.EXPIRED: "JWT token has expired",
    TokenErrorKind.REVOKED: "JWT token has been revoked",
}


@dataclass(frozen=True)
class FieldError:
    field: str
    rejected_value: Any
    message: str
    code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "rejectedValue": self.rejected_value,
            "message": self.message,
            "code": self.code,
        }


class ConfigError(ValueError):
    """配置非法（加载期抛出，不会出现在请求处理中）。"""


class GatewayError(Exception):
    """网关内部错误：错误码 + 可读信息；status 缺省取错误码默认值。"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[str] = None,
        status: Optional[int] = None,
        validation_errors: Optional[List[FieldError]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.status = status or code.status
        self.validation_errors = validation_errors or []
        self.headers = headers or {}

    def __repr__(self) -> str:
        return f"GatewayError({self.code.code}, {self.status}, {self.message!r})"


class TokenError(GatewayError):
    """INVALID_TOKEN 的细分：kind 标明失败原因。"""

    def __init__(self, kind: TokenErrorKind, details: Optional[str] = None) -> None:
        super().__init__(ErrorCode.INVALID_TOKEN, _TOKEN_MESSAGES[kind], details=details or kind.value)
        self.kind = kind


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


def code_for_status(status: int) -> ErrorCode:
    """上游状态码 -> 错误码，用于包装空/非 JSON 的上游错误。"""
    if status == 401:
        return ErrorCode.INVALID_TOKEN
    if status == 403:
        return ErrorCode.UNAUTHORIZED_ACCESS
    if status == 404:
        return ErrorCode.ROUTE_NOT_FOUND
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if status in (502, 503):
        return ErrorCode.SERVICE_UNAVAILABLE
    if status == 504:
        return ErrorCode.GATEWAY_TIMEOUT
    if status >= 500:
        return ErrorCode.INTERNAL_ERROR
    return ErrorCode.UPSTREAM_ERROR


def format_timestamp(ts: Optional[float] = None) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time() if ts is None else ts))


def build_envelope(
    code: str,
    message: str,
    status: int,
    path: str,
    method: str,
    correlation_id: str,
    details: Optional[str] = None,
    validation_errors: Optional[List[FieldError]] = None,
    ts: Optional[float] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "code": code,
        "message": message,
        "status": status,
        "error": reason_phrase(status),
        "path": path,
        "method": method,
        "timestamp": format_timestamp(ts),
        "correlationId": correlation_id,
        "details": details,
    }
    if validation_errors:
        body["validationErrors"] = [e.to_dict() for e in validation_errors]
    return body


def envelope_response(
    err: GatewayError,
    path: str,
    method: str,
    correlation_id: str,
    headers: Optional[Dict[str, str]] = None,
) -> Response:
    """GatewayError -> JSON 信封响应；status 与响应行一致。"""
    body = build_envelope(
        err.code.code, err.message, err.status, path, method, correlation_id,
        details=err.details, validation_errors=err.validation_errors,
    )
    out_headers = dict(err.headers)
    out_headers.update(headers or {})
    return Response(
        json.dumps(body, ensure_ascii=False),
        status_code=err.status,
        media_type=JSON_CONTENT_TYPE,
        headers=out_headers,
    )


def wrap_upstream_error(status: int, body: bytes, content_type: str) -> Optional[GatewayError]:
    """上游 >= 400 且响应体为空或非 JSON 时返回待包装的错误；否则 None（原样透传）。"""
    if status < 400:
        return None
    if body and "json" in (content_type or "").lower():
        try:
            json.loads(body)
            return None
        except ValueError:
            pass
    message = f"Upstream service responded with {status} {reason_phrase(status)}"
    details = None
    if body:
        details = body[:200].decode("utf-8", errors="replace")
    return GatewayError(code_for_status(status), message, details=details, status=status)


__all__ = [
    "ErrorCode",
    "TokenErrorKind",
    "FieldError",
    "ConfigError",
    "GatewayError",
    "TokenError",
    "reason_phrase",
    "code_for_status",
    "format_timestamp",
    "build_envelope",
    "envelope_response",
    "wrap_upstream_error",
    "JSON_CONTENT_TYPE",
]
