"""
网关配置加载
开箱即用：无配置文件时使用内置默认值（无路由）。
- 配置文件：GATEWAY_CONFIG_PATH 指向 .yaml/.yml（PyYAML）或 .json；键名同时接受 camelCase 与 snake_case。
- 环境变量覆盖：GATEWAY_CB_*、GATEWAY_JWT_*、GATEWAY_*_TIMEOUT_MS、SERVICE_<NAME>_URL 等，便于容器内调优。
路由条目保持原始 dict，由 routes.build_route_table 编译为不可变路由表。
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger("gateway.config")

CONFIG_PATH_ENV = "GATEWAY_CONFIG_PATH"

SUPPORTED_ALGORITHMS = (
    "HS256", "HS384", "HS512",
    "RS256", "RS384", "RS512",
    "ES256", "ES384", "ES512",
)


def _float_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def as_bool(value: Any, default: bool) -> bool:
    """配置布尔值：兼容 JSON 字符串与环境变量展开后的 "false"/"0"。"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    raw = str(value).strip().lower()
    if raw == "":
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"invalid boolean value: {value!r}")


def _bool_env(key: str, default: bool) -> bool:
    try:
        return as_bool(os.environ.get(key), default)
    except ConfigError:
        return default


def _csv_env(key: str) -> Optional[List[str]]:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return None
    return [p.strip() for p in raw.split(",") if p.strip()]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def pick(data: Optional[Dict[str, Any]], name: str, default: Any = None) -> Any:
    """按 snake_case 名取值，兼容 camelCase 写法。"""
    if not isinstance(data, dict):
        return default
    if name in data:
        return data[name]
    camel = _camel(name)
    if camel in data:
        return data[camel]
    return default


@dataclass
class BreakerSettings:
    window_size: int = 20
    window_ms: int = 10000
    min_requests: int = 10
    failure_ratio: float = 0.5
    cooldown_ms: int = 30000
    probe_budget: int = 3

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "BreakerSettings":
        if not overrides:
            return self
        try:
            return BreakerSettings(
                window_size=int(pick(overrides, "window_size", self.window_size)),
                window_ms=int(pick(overrides, "window_ms", self.window_ms)),
                min_requests=int(pick(overrides, "min_requests", self.min_requests)),
                failure_ratio=float(pick(overrides, "failure_ratio", self.failure_ratio)),
                cooldown_ms=int(pick(overrides, "cooldown_ms", self.cooldown_ms)),
                probe_budget=int(pick(overrides, "probe_budget", self.probe_budget)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid breaker setting: {e}") from e


@dataclass(frozen=True)
class JwtKey:
    alg: str
    key: str
    kid: Optional[str] = None

    @property
    def symmetric(self) -> bool:
        return self.alg.startswith("HS")


@dataclass
class AuthSettings:
    keys: List[JwtKey] = field(default_factory=list)
    clock_skew_seconds: int = 30
    issuer: Optional[str] = None
    revocation_store_uri: str = ""
    revocation_cache_ttl_seconds: float = 60
    revocation_timeout_ms: int = 500
    revocation_fail_open: bool = True


@dataclass
class HealthCheckSettings:
    enabled: bool = False
    interval_seconds: float = 10
    path: str = "/health"
    failure_threshold: int = 3
    timeout_seconds: float = 2


@dataclass
class DiscoverySettings:
    registry_uri: str = ""
    cache_ttl_seconds: float = 10
    grace_seconds: float = 30
    static: Dict[str, List[str]] = field(default_factory=dict)
    dns_port: Optional[int] = None
    health_check: HealthCheckSettings = field(default_factory=HealthCheckSettings)


@dataclass
class CorsSettings:
    allowed_origins: List[str] = field(default_factory=list)
    allowed_methods: List[str] = field(default_factory=lambda: ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    allowed_headers: List[str] = field(default_factory=lambda: [
        "Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin", "X-Correlation-Id",
    ])
    exposed_headers: List[str] = field(default_factory=lambda: ["X-Correlation-Id"])
    allow_credentials: bool = True
    max_age_seconds: int = 3600


@dataclass
class TimeoutSettings:
    connect_ms: int = 5000
    read_ms: int = 30000
    total_ms: int = 60000


@dataclass
class HttpSettings:
    stream_threshold_bytes: int = 1024 * 1024
    retry_attempts: int = 2
    max_connections: int = 200


@dataclass
class RateLimitSettings:
    enabled: bool = False
    per_ip_per_minute: int = 1000
    per_user_per_minute: int = 10000


@dataclass
class GatewaySettings:
    routes: List[Dict[str, Any]] = field(default_factory=list)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    cors: CorsSettings = field(default_factory=CorsSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    admin_roles: List[str] = field(default_factory=lambda: ["ADMIN"])
    source_path: Optional[str] = None


def load_document(path: str) -> Dict[str, Any]:
    """从文件读取配置：.yaml/.yml 用 PyYAML，其余按 JSON。"""
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    lower = path.lower()
    try:
        if lower.endswith(".yaml") or lower.endswith(".yml"):
            data = yaml.safe_load(content) or {}
        else:
            data = json.loads(content) if content.strip() else {}
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"cannot parse gateway config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"gateway config {path} must be a mapping at top level")
    return data


def _parse_key(item: Dict[str, Any]) -> Optional[JwtKey]:
    alg = str(pick(item, "alg", "HS256")).upper()
    if alg not in SUPPORTED_ALGORITHMS:
        raise ConfigError(f"unsupported JWT algorithm: {alg}")
    kid = pick(item, "kid")
    if alg.startswith("HS"):
        secret = pick(item, "secret")
        if not secret:
            raise ConfigError(f"JWT key {kid or alg} requires a secret")
        secret = expand_placeholders(str(secret))
        if _PLACEHOLDER_RE.search(secret):
            logger.warning("JWT key %s skipped: secret placeholder is not set", kid or alg)
            return None
        return JwtKey(alg=alg, key=secret, kid=kid)
    pem = pick(item, "public_key")
    pem_file = pick(item, "public_key_file")
    if not pem and pem_file:
        try:
            with open(pem_file, "r", encoding="utf-8") as f:
                pem = f.read()
        except OSError as e:
            raise ConfigError(f"JWT key {kid or alg}: cannot read publicKeyFile {pem_file}: {e}") from e
    if not pem:
        raise ConfigError(f"JWT key {kid or alg} requires publicKey or publicKeyFile")
    return JwtKey(alg=alg, key=str(pem), kid=kid)


def _parse_auth(data: Dict[str, Any]) -> AuthSettings:
    auth = pick(data, "auth", {}) or {}
    jwt_cfg = pick(auth, "jwt", {}) or {}
    revocation = pick(auth, "revocation", {}) or {}
    keys = [k for k in (_parse_key(item) for item in (pick(jwt_cfg, "keys", []) or []) if isinstance(item, dict)) if k]
    return AuthSettings(
        keys=keys,
        clock_skew_seconds=int(pick(jwt_cfg, "clock_skew_seconds", 30)),
        issuer=pick(jwt_cfg, "issuer"),
        revocation_store_uri=_PLACEHOLDER_RE.sub("", expand_placeholders(str(pick(revocation, "store_uri", "") or ""))).strip(),
        revocation_cache_ttl_seconds=float(pick(revocation, "cache_ttl_seconds", 60)),
        revocation_timeout_ms=int(pick(revocation, "timeout_ms", 500)),
        revocation_fail_open=as_bool(pick(revocation, "fail_open"), True),
    )


def _parse_discovery(data: Dict[str, Any]) -> DiscoverySettings:
    disc = pick(data, "discovery", {}) or {}
    hc = pick(disc, "health_check", {}) or {}
    static: Dict[str, List[str]] = {}
    for name, urls in (pick(disc, "static", {}) or {}).items():
        if isinstance(urls, str):
            urls = [urls]
        static[str(name)] = [str(u).rstrip("/") for u in urls if u]
    dns_port = pick(disc, "dns_port")
    return DiscoverySettings(
        registry_uri=str(pick(disc, "registry_uri", "") or "").rstrip("/"),
        cache_ttl_seconds=float(pick(disc, "cache_ttl_seconds", 10)),
        grace_seconds=float(pick(disc, "grace_seconds", 30)),
        static=static,
        dns_port=int(dns_port) if dns_port else None,
        health_check=HealthCheckSettings(
            enabled=as_bool(pick(hc, "enabled"), False),
            interval_seconds=float(pick(hc, "interval_seconds", 10)),
            path=str(pick(hc, "path", "/health")),
            failure_threshold=int(pick(hc, "failure_threshold", 3)),
            timeout_seconds=float(pick(hc, "timeout_seconds", 2)),
        ),
    )


def _parse_cors(data: Dict[str, Any]) -> CorsSettings:
    cors = pick(data, "cors", {}) or {}
    defaults = CorsSettings()
    return CorsSettings(
        allowed_origins=list(pick(cors, "allowed_origins", defaults.allowed_origins) or []),
        allowed_methods=[m.upper() for m in (pick(cors, "allowed_methods", defaults.allowed_methods) or [])],
        allowed_headers=list(pick(cors, "allowed_headers", defaults.allowed_headers) or []),
        exposed_headers=list(pick(cors, "exposed_headers", defaults.exposed_headers) or []),
        allow_credentials=as_bool(pick(cors, "allow_credentials"), defaults.allow_credentials),
        max_age_seconds=int(pick(cors, "max_age_seconds", defaults.max_age_seconds)),
    )


def _parse_settings(data: Dict[str, Any]) -> GatewaySettings:
    routes = pick(data, "routes", []) or []
    if not isinstance(routes, list):
        raise ConfigError("routes must be a list")
    breaker_cfg = pick(data, "breaker", {}) or {}
    timeouts = pick(data, "timeouts", {}) or {}
    http_cfg = pick(data, "http", {}) or {}
    rl = pick(data, "rate_limit", {}) or {}
    admin = pick(data, "admin", {}) or {}
    return GatewaySettings(
        routes=[r for r in routes if isinstance(r, dict)],
        breaker=BreakerSettings().merged(pick(breaker_cfg, "defaults", {})),
        auth=_parse_auth(data),
        discovery=_parse_discovery(data),
        cors=_parse_cors(data),
        timeouts=TimeoutSettings(
            connect_ms=int(pick(timeouts, "connect_ms", 5000)),
            read_ms=int(pick(timeouts, "read_ms", 30000)),
            total_ms=int(pick(timeouts, "total_ms", 60000)),
        ),
        http=HttpSettings(
            stream_threshold_bytes=int(pick(http_cfg, "stream_threshold_bytes", 1024 * 1024)),
            retry_attempts=max(1, int(pick(http_cfg, "retry_attempts", 2))),
            max_connections=int(pick(http_cfg, "max_connections", 200)),
        ),
        rate_limit=RateLimitSettings(
            enabled=as_bool(pick(rl, "enabled"), False),
            per_ip_per_minute=int(pick(rl, "per_ip_per_minute", 1000)),
            per_user_per_minute=int(pick(rl, "per_user_per_minute", 10000)),
        ),
        admin_roles=list(pick(admin, "roles", ["ADMIN"]) or ["ADMIN"]),
    )


def _service_name_from_env(key: str) -> str:
    # SERVICE_PRODUCT_CATALOG_URL -> product-catalog
    return key[len("SERVICE_"):-len("_URL")].lower().replace("_", "-")


def _apply_env_overrides(settings: GatewaySettings) -> None:
    b = settings.breaker
    b.window_size = _int_env("GATEWAY_CB_WINDOW_SIZE", b.window_size)
    b.window_ms = _int_env("GATEWAY_CB_WINDOW_MS", b.window_ms)
    b.min_requests = _int_env("GATEWAY_CB_MIN_REQUESTS", b.min_requests)
    b.failure_ratio = _float_env("GATEWAY_CB_FAILURE_RATIO", b.failure_ratio)
    b.cooldown_ms = _int_env("GATEWAY_CB_COOLDOWN_MS", b.cooldown_ms)
    b.probe_budget = _int_env("GATEWAY_CB_PROBE_BUDGET", b.probe_budget)

    a = settings.auth
    secret = (os.environ.get("GATEWAY_JWT_SECRET") or "").strip()
    if secret:
        a.keys.append(JwtKey(alg="HS256", key=secret, kid=os.environ.get("GATEWAY_JWT_KID") or None))
    a.issuer = os.environ.get("GATEWAY_JWT_ISSUER") or a.issuer
    a.clock_skew_seconds = _int_env("GATEWAY_JWT_CLOCK_SKEW_SEC", a.clock_skew_seconds)
    a.revocation_store_uri = (os.environ.get("GATEWAY_REVOCATION_STORE_URL") or a.revocation_store_uri).strip()

    d = settings.discovery
    d.registry_uri = (os.environ.get("GATEWAY_DISCOVERY_URL") or d.registry_uri).strip().rstrip("/")
    for key, val in os.environ.items():
        if key.startswith("SERVICE_") and key.endswith("_URL") and val:
            urls = [u.strip().rstrip("/") for u in val.split(",") if u.strip()]
            d.static.setdefault(_service_name_from_env(key), urls)

    t = settings.timeouts
    t.connect_ms = _int_env("GATEWAY_CONNECT_TIMEOUT_MS", t.connect_ms)
    t.read_ms = _int_env("GATEWAY_READ_TIMEOUT_MS", t.read_ms)
    t.total_ms = _int_env("GATEWAY_TOTAL_TIMEOUT_MS", t.total_ms)

    origins = _csv_env("GATEWAY_CORS_ALLOWED_ORIGINS")
    if origins is not None:
        settings.cors.allowed_origins = origins
    settings.rate_limit.enabled = _bool_env("GATEWAY_RATE_LIMIT_ENABLED", settings.rate_limit.enabled)


def settings_from_dict(data: Dict[str, Any], apply_env: bool = True) -> GatewaySettings:
    try:
        settings = _parse_settings(data or {})
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid gateway config value: {e}") from e
    if apply_env:
        _apply_env_overrides(settings)
    return settings


def load_settings(path: Optional[str] = None, apply_env: bool = True) -> GatewaySettings:
    """加载网关配置；path 为空时读 GATEWAY_CONFIG_PATH，文件不存在则使用默认值。"""
    path = path or (os.environ.get(CONFIG_PATH_ENV) or "").strip()
    data: Dict[str, Any] = {}
    if path:
        if os.path.isfile(path):
            data = load_document(path)
        else:
            logger.warning("gateway config not found, using defaults: %s", path)
    settings = settings_from_dict(data, apply_env=apply_env)
    settings.source_path = path or None
    return settings


_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")


def expand_placeholders(value: str) -> str:
    """${VAR} -> 环境变量值（未设置时保持原样）。"""
    return _PLACEHOLDER_RE.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)


__all__ = [
    "BreakerSettings",
    "JwtKey",
    "AuthSettings",
    "HealthCheckSettings",
    "DiscoverySettings",
    "CorsSettings",
    "TimeoutSettings",
    "HttpSettings",
    "RateLimitSettings",
    "GatewaySettings",
    "load_document",
    "load_settings",
    "settings_from_dict",
    "pick",
    "as_bool",
    "SUPPORTED_ALGORITHMS",
]
