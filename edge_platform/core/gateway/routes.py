"""
动态路由表与路径重写
- 路由规则为纯数据（配置中的 routes 数组），加载时编译为不可变 RouteTable；运行期只读。
- 匹配优先级：最长静态前缀 > 更具体的方法集合 > 声明顺序；同一请求重放始终命中同一规则。
- 变更通过 RouteTableHolder.swap 整表原子替换（热加载钩子）。
- 路径重写：规则的 regex -> replacement，仅作用于 path，query 原样保留。
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Pattern, Tuple

from .config import BreakerSettings, as_bool, pick
from .errors import ConfigError, ErrorCode, GatewayError

ANY_METHOD: FrozenSet[str] = frozenset()

_VAR_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_NAMED_GROUP_RE = re.compile(r"\(\?<(?![=!])")
_DOLLAR_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_GROUP_REF_RE = re.compile(r"\\g<([^>]+)>|\\(\d+)")


def _compile_path_pattern(pattern: str) -> Tuple[Pattern[str], int]:
    """路径模式 -> (正则, 静态前缀长度)。支持 {var} 段捕获、* 单段、结尾 /** 任意后缀。"""
    if not pattern.startswith("/"):
        raise ConfigError(f"route path must start with '/': {pattern}")
    tail_any = pattern.endswith("/**")
    body = pattern[:-3] if tail_any else pattern
    if "**" in body:
        raise ConfigError(f"'**' is only allowed as the last segment: {pattern}")
    first_dynamic = min([i for i in (body.find("{"), body.find("*")) if i >= 0] or [len(body)])
    prefix_len = len(body[:first_dynamic].rstrip("/"))

    out = []
    pos = 0
    for m in _VAR_RE.finditer(body):
        out.append(re.escape(body[pos:m.start()]).replace(r"\*", "[^/]+"))
        out.append(f"(?P<{m.group(1)}>[^/]+)")
        pos = m.end()
    out.append(re.escape(body[pos:]).replace(r"\*", "[^/]+"))
    regex = "".join(out)
    if tail_any:
        regex += "(?:/.*)?"
    else:
        regex += "/?"
    return re.compile(f"^{regex}$"), prefix_len


def normalize_regex(regex: str) -> str:
    """(?<name>...) -> (?P<name>...)，兼容网关 DSL 常见写法。"""
    return _NAMED_GROUP_RE.sub("(?P<", regex)


def normalize_replacement(replacement: str) -> str:
    """${name} -> \\g<name>。"""
    return _DOLLAR_REF_RE.sub(lambda m: "\\g<" + m.group(1) + ">", replacement)


def _check_group_refs(compiled: Pattern[str], replacement: str, rule_id: str) -> None:
    for m in _GROUP_REF_RE.finditer(replacement):
        ref = m.group(1) if m.group(1) is not None else m.group(2)
        if ref.isdigit():
            if int(ref) > compiled.groups:
                raise ConfigError(f"route {rule_id}: replacement references missing group {ref}")
        elif ref not in compiled.groupindex:
            raise ConfigError(f"route {rule_id}: replacement references unknown group '{ref}'")


@dataclass(frozen=True)
class RouteRule:
    rule_id: str
    path: str
    service: str
    breaker_name: str
    methods: FrozenSet[str] = ANY_METHOD
    rewrite_regex: Optional[Pattern[str]] = None
    rewrite_replacement: str = ""
    fallback_uri: str = ""
    auth_required: bool = True
    roles: FrozenSet[str] = frozenset()
    idempotent_safe: bool = False
    breaker: BreakerSettings = field(default_factory=BreakerSettings, compare=False)
    matcher: Optional[Pattern[str]] = field(default=None, compare=False, repr=False)
    prefix_len: int = field(default=0, compare=False)
    order: int = field(default=0, compare=False)

    def matches(self, method: str, path: str) -> bool:
        if self.methods and method.upper() not in self.methods:
            return False
        return bool(self.matcher and self.matcher.match(path))

    def sort_key(self) -> Tuple[int, int, int]:
        method_rank = len(self.methods) if self.methods else 1 << 16
        return (-self.prefix_len, method_rank, self.order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rule_id,
            "path": self.path,
            "methods": sorted(self.methods),
            "service": self.service,
            "breaker": self.breaker_name,
            "fallbackUri": self.fallback_uri,
            "authRequired": self.auth_required,
            "roles": sorted(self.roles),
            "idempotentSafe": self.idempotent_safe,
            "rewrite": {
                "regex": self.rewrite_regex.pattern,
                "replacement": self.rewrite_replacement,
            } if self.rewrite_regex is not None else None,
        }


def rewrite_path(rule: RouteRule, path: str) -> str:
    """按规则重写 path；结果为空视为配置错误（500 INTERNAL_ERROR）。"""
    if rule.rewrite_regex is None:
        return path
    new_path = rule.rewrite_regex.sub(rule.rewrite_replacement, path, count=1)
    if not new_path:
        raise GatewayError(
            ErrorCode.INTERNAL_ERROR,
            "Route rewrite produced an empty upstream path",
            details=f"rule={rule.rule_id}",
        )
    if not new_path.startswith("/"):
        new_path = "/" + new_path
    return new_path


def _service_of(item: Dict[str, Any], rule_id: str) -> str:
    service = (pick(item, "service") or "").strip()
    uri = (pick(item, "uri") or "").strip()
    if not service and uri.startswith("lb://"):
        service = uri[len("lb://"):].strip("/")
    if not service:
        raise ConfigError(f"route {rule_id}: 'service' or 'uri: lb://<service>' is required")
    return service


def build_rule(item: Dict[str, Any], order: int, breaker_defaults: BreakerSettings) -> RouteRule:
    rule_id = str(pick(item, "id") or "").strip()
    if not rule_id:
        raise ConfigError(f"route #{order} has no id")
    path = str(pick(item, "path") or "").strip()
    if not path:
        raise ConfigError(f"route {rule_id}: path is required")
    matcher, prefix_len = _compile_path_pattern(path)
    service = _service_of(item, rule_id)

    rewrite = pick(item, "rewrite") or {}
    rewrite_regex = None
    replacement = ""
    if rewrite:
        raw_regex = pick(rewrite, "regex") or ""
        replacement = normalize_replacement(str(pick(rewrite, "replacement", "") or ""))
        if not raw_regex or not replacement:
            raise ConfigError(f"route {rule_id}: rewrite needs both regex and a non-empty replacement")
        try:
            rewrite_regex = re.compile(normalize_regex(str(raw_regex)))
        except re.error as e:
            raise ConfigError(f"route {rule_id}: invalid rewrite regex: {e}") from e
        _check_group_refs(rewrite_regex, replacement, rule_id)

    methods = frozenset(str(m).upper() for m in (pick(item, "methods") or []))
    return RouteRule(
        rule_id=rule_id,
        path=path,
        service=service,
        breaker_name=str(pick(item, "breaker") or f"{rule_id}CircuitBreaker"),
        methods=methods,
        rewrite_regex=rewrite_regex,
        rewrite_replacement=replacement,
        fallback_uri=str(pick(item, "fallback_uri") or f"forward:/fallback/{service}"),
        auth_required=as_bool(pick(item, "auth_required"), True),
        roles=frozenset(str(r) for r in (pick(item, "roles") or [])),
        idempotent_safe=as_bool(pick(item, "idempotent_safe"), False),
        breaker=breaker_defaults.merged(pick(item, "breaker_config")),
        matcher=matcher,
        prefix_len=prefix_len,
        order=order,
    )


class RouteTable:
    """不可变路由表：规则按优先级预排序，match 为纯读操作。"""

    def __init__(self, rules: Iterable[RouteRule]) -> None:
        rules = list(rules)
        ids = set()
        breakers = set()
        for r in rules:
            if r.rule_id in ids:
                raise ConfigError(f"duplicate route id: {r.rule_id}")
            if r.breaker_name in breakers:
                raise ConfigError(f"duplicate circuit breaker name: {r.breaker_name}")
            ids.add(r.rule_id)
            breakers.add(r.breaker_name)
        self._declared: Tuple[RouteRule, ...] = tuple(rules)
        self._ordered: Tuple[RouteRule, ...] = tuple(sorted(rules, key=RouteRule.sort_key))

    @property
    def rules(self) -> Tuple[RouteRule, ...]:
        return self._declared

    def __len__(self) -> int:
        return len(self._declared)

    def get(self, rule_id: str) -> Optional[RouteRule]:
        for r in self._declared:
            if r.rule_id == rule_id:
                return r
        return None

    def match(self, method: str, path: str) -> Optional[RouteRule]:
        for rule in self._ordered:
            if rule.matches(method, path):
                return rule
        return None

    def require(self, method: str, path: str) -> RouteRule:
        rule = self.match(method, path)
        if rule is None:
            raise GatewayError(ErrorCode.ROUTE_NOT_FOUND, f"No route found for {method} {path}")
        return rule


def build_route_table(items: List[Dict[str, Any]], breaker_defaults: Optional[BreakerSettings] = None) -> RouteTable:
    defaults = breaker_defaults or BreakerSettings()
    return RouteTable(build_rule(item, i, defaults) for i, item in enumerate(items or []))


class RouteTableHolder:
    """持有当前路由表；读无锁，写整表替换。"""

    def __init__(self, table: RouteTable) -> None:
        self._table = table
        self._write_lock = threading.Lock()

    @property
    def current(self) -> RouteTable:
        return self._table

    def swap(self, table: RouteTable) -> RouteTable:
        with self._write_lock:
            old = self._table
            self._table = table
            return old


__all__ = [
    "RouteRule",
    "RouteTable",
    "RouteTableHolder",
    "build_rule",
    "build_route_table",
    "rewrite_path",
    "normalize_regex",
    "normalize_replacement",
]
