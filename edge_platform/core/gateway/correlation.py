"""
关联 ID（X-Correlation-Id）：入站合法则沿用，否则生成；回写到每个响应并透传上游。
合法格式：UUID（8-4-4-4-12 十六进制）或 ULID（26 位 Crockford Base32）。
请求级上下文放在 contextvars 中，日志 Filter 自动带出 correlation_id。
"""
from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional, Tuple

CORRELATION_HEADER = "X-Correlation-Id"

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_ULID_RE = re.compile(r"^[0-7][0-9A-HJKMNP-TV-Za-hjkmnp-tv-z]{25}$")

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    return correlation_id_ctx.get()


def is_well_formed(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(_UUID_RE.match(value) or _ULID_RE.match(value))


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def resolve_correlation_id(incoming: Optional[str]) -> Tuple[str, bool]:
    """返回 (correlation_id, 是否沿用入站值)。"""
    value = (incoming or "").strip()
    if is_well_formed(value):
        return value, True
    return new_correlation_id(), False


class CorrelationIdFilter(logging.Filter):
    """为每条日志记录注入 correlation_id 字段（无请求上下文时为 "-"）。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get() or "-"
        return True


__all__ = [
    "CORRELATION_HEADER",
    "correlation_id_ctx",
    "get_correlation_id",
    "is_well_formed",
    "new_correlation_id",
    "resolve_correlation_id",
    "CorrelationIdFilter",
]
