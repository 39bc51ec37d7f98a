"""
熔断器：每条路由规则一个实例，所有并发请求共享。
触发条件：滑动窗口（最近 W 次结果，且不早于 T 毫秒）内样本数 >= M 且失败率 >= 阈值（含等于）-> OPEN。
OPEN：请求直接降级，不触达上游；到达 open_until 后的首个请求转 HALF_OPEN 并获得 P 个探测名额。
HALF_OPEN：P 个探测全部成功 -> CLOSED 并清空窗口；任一探测失败 -> 立即 OPEN 并刷新 open_until。
状态转换在锁内完成；探测名额为“比较并递减”；每个请求的结果只记一次，被取消的请求不计入。
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple

from .config import BreakerSettings

logger = logging.getLogger("gateway.breaker")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


TransitionListener = Callable[[str, BreakerState, BreakerState], None]


@dataclass(frozen=True)
class Permit:
    """放行凭证：记录放行时的代次与是否为探测请求；结果回报时据此判断是否仍有效。"""

    breaker: str
    generation: int
    probe: bool
    state: BreakerState


class CircuitBreaker:
    """单规则熔断器，线程安全（asyncio 下锁内无 await）。"""

    def __init__(
        self,
        name: str,
        settings: Optional[BreakerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.name = name
        self.settings = settings or BreakerSettings()
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._generation = 0
        self._window: Deque[Tuple[float, bool]] = deque(maxlen=max(1, self.settings.window_size))
        self._open_until = 0.0
        self._probes_granted = 0
        self._probe_successes = 0
        self._rejected = 0

    # ---------- 状态查询 ----------

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def open_until(self) -> float:
        with self._lock:
            return self._open_until

    @property
    def rejected(self) -> int:
        with self._lock:
            return self._rejected

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            self._prune(self._clock())
            failures = sum(1 for _, failed in self._window if failed)
            return {
                "name": self.name,
                "state": self._state.value,
                "window": len(self._window),
                "failures": failures,
                "rejected": self._rejected,
                "probesGranted": self._probes_granted,
            }

    # ---------- 放行 ----------

    def try_acquire(self) -> Optional[Permit]:
        """返回放行凭证；熔断中或探测名额耗尽时返回 None 并计一次 rejected。"""
        transition = None
        with self._lock:
            now = self._clock()
            if self._state == BreakerState.OPEN and now >= self._open_until:
                transition = self._transition(BreakerState.HALF_OPEN)
            if self._state == BreakerState.CLOSED:
                permit = Permit(self.name, self._generation, False, BreakerState.CLOSED)
            elif self._state == BreakerState.HALF_OPEN and self._probes_granted < self.settings.probe_budget:
                self._probes_granted += 1
                permit = Permit(self.name, self._generation, True, BreakerState.HALF_OPEN)
            else:
                self._rejected += 1
                permit = None
        self._notify(transition)
        return permit

    # ---------- 结果回报 ----------

    def on_success(self, permit: Permit) -> None:
        self._record(permit, failed=False)

    def on_failure(self, permit: Permit) -> None:
        self._record(permit, failed=True)

    def on_ignored(self, permit: Permit) -> None:
        """请求被取消或上游 4xx：不计成功也不计失败；探测名额归还。"""
        with self._lock:
            if permit.probe and permit.generation == self._generation and self._state == BreakerState.HALF_OPEN:
                self._probes_granted = max(0, self._probes_granted - 1)

    def _record(self, permit: Permit, failed: bool) -> None:
        transition = None
        with self._lock:
            if permit.generation != self._generation:
                # 放行后状态已变化，迟到的结果不再影响当前代次
                return
            now = self._clock()
            if self._state == BreakerState.HALF_OPEN:
                if failed:
                    transition = self._trip(now)
                else:
                    self._probe_successes += 1
                    if self._probe_successes >= self.settings.probe_budget:
                        transition = self._transition(BreakerState.CLOSED)
            elif self._state == BreakerState.CLOSED:
                self._window.append((now, failed))
                self._prune(now)
                if self._should_trip():
                    transition = self._trip(now)
        self._notify(transition)

    # ---------- 内部（均在锁内调用） ----------

    def _prune(self, now: float) -> None:
        horizon = now - self.settings.window_ms / 1000.0
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _should_trip(self) -> bool:
        total = len(self._window)
        if total < max(1, self.settings.min_requests):
            return False
        failures = sum(1 for _, failed in self._window if failed)
        return failures / total >= self.settings.failure_ratio

    def _trip(self, now: float) -> Tuple[BreakerState, BreakerState]:
        self._open_until = now + self.settings.cooldown_ms / 1000.0
        return self._transition(BreakerState.OPEN)

    def _transition(self, to: BreakerState) -> Tuple[BreakerState, BreakerState]:
        frm = self._state
        self._state = to
        self._generation += 1
        self._probes_granted = 0
        self._probe_successes = 0
        if to == BreakerState.CLOSED:
            self._window.clear()
        return frm, to

    def _notify(self, transition: Optional[Tuple[BreakerState, BreakerState]]) -> None:
        if not transition:
            return
        frm, to = transition
        logger.info("circuit breaker %s: %s -> %s", self.name, frm.value, to.value)
        if self._on_transition:
            self._on_transition(self.name, frm, to)


class CircuitBreakerRegistry:
    """按规则 id 持有熔断器；路由表热替换时保留仍存在规则的熔断状态。"""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._on_transition = on_transition

    def get(self, rule_id: str, settings: Optional[BreakerSettings] = None, name: Optional[str] = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(rule_id)
            if breaker is None:
                breaker = CircuitBreaker(name or rule_id, settings, clock=self._clock, on_transition=self._on_transition)
                self._breakers[rule_id] = breaker
            return breaker

    def sync(self, rules: Iterable) -> None:
        """与路由表对齐：新增规则建熔断器，删除规则丢弃其熔断器。"""
        rules = list(rules)
        with self._lock:
            keep = {r.rule_id for r in rules}
            for rule_id in list(self._breakers):
                if rule_id not in keep:
                    del self._breakers[rule_id]
        for r in rules:
            self.get(r.rule_id, r.breaker, name=r.breaker_name)

    def states(self) -> Dict[str, str]:
        with self._lock:
            items = list(self._breakers.items())
        return {rule_id: b.state.value for rule_id, b in items}


__all__ = ["BreakerState", "Permit", "CircuitBreaker", "CircuitBreakerRegistry"]
