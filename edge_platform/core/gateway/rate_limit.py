"""
网关限流（可选，默认关闭）：按客户端 IP 与按用户双维度，内存一分钟滑动窗口。
超限返回 429 RATE_LIMITED 并带 Retry-After；放行时给出剩余额度（X-RateLimit-Remaining）。
"""
from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .config import RateLimitSettings

WINDOW_SEC = 60.0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: str = ""
    remaining: int = 0
    retry_after: int = 0


class RateLimiter:
    def __init__(self, settings: Optional[RateLimitSettings] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings or RateLimitSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._ip_ts: Dict[str, Deque[float]] = {}
        self._user_ts: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def _prune(self, ts: Deque[float], now: float) -> None:
        while ts and now - ts[0] >= WINDOW_SEC:
            ts.popleft()

    def _sweep(self, now: float) -> None:
        """每个窗口周期清理一次已无请求记录的 IP / 用户。"""
        if now - self._last_sweep < WINDOW_SEC:
            return
        self._last_sweep = now
        for table in (self._ip_ts, self._user_ts):
            for key in list(table):
                self._prune(table[key], now)
                if not table[key]:
                    del table[key]

    def tracked(self) -> int:
        with self._lock:
            return len(self._ip_ts) + len(self._user_ts)

    def _retry_after(self, ts: Deque[float], now: float) -> int:
        if not ts:
            return 1
        return max(1, int(math.ceil(WINDOW_SEC - (now - ts[0]))))

    def allow(self, ip: str, user: Optional[str] = None) -> RateDecision:
        """先查 IP 再查用户；两者都未超限才记一次。"""
        if not self.settings.enabled:
            return RateDecision(True)
        now = self._clock()
        with self._lock:
            self._sweep(now)
            ip_ts = self._ip_ts.setdefault(ip, deque())
            self._prune(ip_ts, now)
            if len(ip_ts) >= self.settings.per_ip_per_minute:
                return RateDecision(False, "RATE_LIMIT_IP", 0, self._retry_after(ip_ts, now))
            remaining = self.settings.per_ip_per_minute - len(ip_ts) - 1
            user_ts = None
            if user:
                user_ts = self._user_ts.setdefault(user, deque())
                self._prune(user_ts, now)
                if len(user_ts) >= self.settings.per_user_per_minute:
                    return RateDecision(False, "RATE_LIMIT_USER", 0, self._retry_after(user_ts, now))
                remaining = min(remaining, self.settings.per_user_per_minute - len(user_ts) - 1)
                user_ts.append(now)
            ip_ts.append(now)
        return RateDecision(True, "", remaining)


__all__ = ["RateLimiter", "RateDecision", "WINDOW_SEC"]
