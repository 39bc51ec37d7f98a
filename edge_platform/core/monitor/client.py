"""
网关监控埋点客户端
- 每个请求一条结构化访问记录（JSON 单行，logger gateway.access），带关联 ID。
- 指标行（logger edge.monitor），可对接 Prometheus/StatsD 采集。
"""
import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("edge.monitor")
access_logger = logging.getLogger("gateway.access")


def build_access_record(
    correlation_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: float,
    rule_id: Optional[str] = None,
    service: Optional[str] = None,
    instance: Optional[str] = None,
    attempts: int = 0,
    breaker_entry: Optional[str] = None,
    breaker_exit: Optional[str] = None,
    bytes_in: int = 0,
    bytes_out: int = 0,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "correlationId": correlation_id,
        "method": method,
        "path": path,
        "rule": rule_id,
        "service": service,
        "instance": instance,
        "attempts": attempts,
        "breakerEntry": breaker_entry,
        "breakerExit": breaker_exit,
        "status": status,
        "latencyMs": round(latency_ms, 2),
        "bytesIn": bytes_in,
        "bytesOut": bytes_out,
        "code": code,
        "ts": time.time(),
    }


def emit_access(record: Dict[str, Any]) -> None:
    """写一条访问记录。"""
    access_logger.info(json.dumps(record, ensure_ascii=False))


def emit_metric(name: str, value: float, tags: Optional[dict] = None) -> None:
    """上报指标。"""
    payload = {"metric": name, "value": value, "ts": time.time()}
    if tags:
        payload["tags"] = tags
    logger.info(json.dumps(payload, ensure_ascii=False))
