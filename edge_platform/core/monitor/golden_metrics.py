"""
网关计数器：按规则与状态码的请求数、熔断状态转换、按类型的认证失败、熔断拒绝数。
进程内累计，/gateway/metrics 输出快照；同时以指标行上报（emit_metric），外部可聚合为错误率与 QPS。
"""
import threading
from collections import Counter
from typing import Any, Dict, Optional

from .client import emit_metric

METRIC_REQUESTS = "gateway_requests_total"
METRIC_BREAKER_TRANSITIONS = "gateway_breaker_transitions_total"
METRIC_AUTH_FAILURES = "gateway_auth_failures_total"
METRIC_BREAKER_REJECTED = "gateway_breaker_rejected_total"


class GatewayMetrics:
    def __init__(self, emit: bool = True) -> None:
        self._lock = threading.Lock()
        self._emit = emit
        self.requests: Counter = Counter()
        self.breaker_transitions: Counter = Counter()
        self.auth_failures: Counter = Counter()
        self.breaker_rejected: Counter = Counter()

    def record_request(self, rule_id: Optional[str], status: int) -> None:
        key = (rule_id or "-", int(status))
        with self._lock:
            self.requests[key] += 1
        if self._emit:
            emit_metric(METRIC_REQUESTS, 1, {"rule": key[0], "status": key[1]})

    def record_transition(self, breaker: str, frm: Any, to: Any) -> None:
        key = (breaker, getattr(frm, "value", frm), getattr(to, "value", to))
        with self._lock:
            self.breaker_transitions[key] += 1
        if self._emit:
            emit_metric(METRIC_BREAKER_TRANSITIONS, 1, {"breaker": key[0], "from": key[1], "to": key[2]})

    def record_auth_failure(self, kind: Any) -> None:
        kind = getattr(kind, "value", kind)
        with self._lock:
            self.auth_failures[kind] += 1
        if self._emit:
            emit_metric(METRIC_AUTH_FAILURES, 1, {"kind": kind})

    def record_rejected(self, rule_id: str) -> None:
        with self._lock:
            self.breaker_rejected[rule_id] += 1
        if self._emit:
            emit_metric(METRIC_BREAKER_REJECTED, 1, {"rule": rule_id})

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests": [
                    {"rule": r, "status": s, "count": n} for (r, s), n in sorted(self.requests.items())
                ],
                "breakerTransitions": [
                    {"breaker": b, "from": f, "to": t, "count": n}
                    for (b, f, t), n in sorted(self.breaker_transitions.items())
                ],
                "authFailures": dict(sorted(self.auth_failures.items())),
                "breakerRejected": dict(sorted(self.breaker_rejected.items())),
            }
