"""
网关认证与授权
- TokenValidator：Authorization: Bearer <JWT>，依次完成结构解析、签名校验（对称/非对称密钥集）、exp 校验（含时钟偏差）、jti 吊销检查。
- AuthorizationPolicy：规则要求认证时必须有合法身份；规则声明角色时要求角色交集非空，否则 403。
- 身份透传：剥离入站 X-User-* 头（防伪造），注入 X-User-Id / X-User-Username / X-User-Email / X-User-Roles。
非对称签名校验在线程池中执行，避免阻塞事件循环。
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import jwt

from .config import AuthSettings, JwtKey, SUPPORTED_ALGORITHMS
from .errors import ErrorCode, GatewayError, TokenError, TokenErrorKind

logger = logging.getLogger("gateway.auth")

REQUIRED_CLAIMS = ("sub", "exp", "jti")

USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Username"
USER_EMAIL_HEADER = "X-User-Email"
USER_ROLES_HEADER = "X-User-Roles"
IDENTITY_HEADER_PREFIX = "x-user-"

Headers = List[Tuple[str, str]]


@dataclass(frozen=True)
class IdentityContext:
    subject: str
    username: str = ""
    email: str = ""
    roles: Tuple[str, ...] = ()
    token_id: str = ""
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    token_hash: str = field(default="", repr=False)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return bool(set(self.roles) & set(roles))


def _roles_of(claim: Any) -> Tuple[str, ...]:
    if claim is None:
        return ()
    if isinstance(claim, str):
        return tuple(r.strip() for r in claim.split(",") if r.strip())
    if isinstance(claim, (list, tuple)):
        return tuple(str(r) for r in claim if str(r).strip())
    raise TokenError(TokenErrorKind.MALFORMED, "roles claim must be a list or a comma separated string")


def _int_claim(claims: Dict[str, Any], name: str) -> Optional[int]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenError(TokenErrorKind.MALFORMED, f"claim '{name}' must be numeric")
    return int(value)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """返回 Bearer token；头缺失或 token 为空返回 None；非 Bearer 方案视为格式错误。"""
    if authorization is None or not authorization.strip():
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise TokenError(TokenErrorKind.MALFORMED, "Authorization scheme must be Bearer")
    token = token.strip()
    return token or None


class TokenValidator:
    """JWT 校验器；clock 为墙上时钟（秒），测试可注入。"""

    def __init__(
        self,
        settings: AuthSettings,
        revocation_store=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._keys: Sequence[JwtKey] = tuple(settings.keys)
        self._revocation = revocation_store
        self._clock = clock
        if not self._keys:
            logger.warning("no JWT keys configured; every protected route will reject tokens")

    def _candidate_keys(self, header: Dict[str, Any]) -> List[JwtKey]:
        alg = str(header.get("alg") or "")
        if alg not in SUPPORTED_ALGORITHMS:
            raise TokenError(TokenErrorKind.SIGNATURE, f"unsupported algorithm '{alg}'")
        kid = header.get("kid")
        if kid:
            by_kid = [k for k in self._keys if k.kid == kid and k.alg == alg]
            if by_kid:
                return by_kid
        keys = [k for k in self._keys if k.alg == alg]
        if not keys:
            raise TokenError(TokenErrorKind.SIGNATURE, f"no key configured for alg={alg} kid={kid}")
        return keys

    def _decode(self, token: str, keys: List[JwtKey]) -> Dict[str, Any]:
        last: Optional[Exception] = None
        for key in keys:
            try:
                return jwt.decode(
                    token,
                    key.key,
                    algorithms=[key.alg],
                    issuer=self.settings.issuer,
                    options={
                        "verify_exp": False,
                        "verify_iat": False,
                        "verify_nbf": False,
                        "verify_aud": False,
                        "require": list(REQUIRED_CLAIMS),
                    },
                )
            except jwt.InvalidSignatureError as e:
                last = e
                continue
        raise TokenError(TokenErrorKind.SIGNATURE, str(last) if last else "signature verification failed")

    async def _verify(self, token: str) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise TokenError(TokenErrorKind.MALFORMED, str(e)) from e
        keys = self._candidate_keys(header)
        try:
            if all(k.symmetric for k in keys):
                return self._decode(token, keys)
            return await asyncio.to_thread(self._decode, token, keys)
        except TokenError:
            raise
        except jwt.InvalidIssuerError as e:
            raise TokenError(TokenErrorKind.SIGNATURE, f"untrusted issuer: {e}") from e
        except (jwt.InvalidAlgorithmError, jwt.InvalidKeyError) as e:
            raise TokenError(TokenErrorKind.SIGNATURE, str(e)) from e
        except jwt.MissingRequiredClaimError as e:
            raise TokenError(TokenErrorKind.MALFORMED, str(e)) from e
        except jwt.InvalidTokenError as e:
            raise TokenError(TokenErrorKind.MALFORMED, str(e)) from e

    async def validate(self, token: Optional[str]) -> IdentityContext:
        """token -> IdentityContext；任一步失败抛 TokenError（401 INVALID_TOKEN）。"""
        if not token:
            raise TokenError(TokenErrorKind.MISSING)
        claims = await self._verify(token)

        exp = _int_claim(claims, "exp")
        now = self._clock()
        if exp is None or exp + self.settings.clock_skew_seconds <= now:
            raise TokenError(TokenErrorKind.EXPIRED, f"exp={exp}")

        jti = str(claims.get("jti") or "")
        if not jti:
            raise TokenError(TokenErrorKind.MALFORMED, "claim 'jti' is empty")
        if self._revocation is not None and await self._revocation.is_revoked(jti):
            raise TokenError(TokenErrorKind.REVOKED, f"jti={jti}")

        sub = str(claims.get("sub") or "")
        if not sub:
            raise TokenError(TokenErrorKind.MALFORMED, "claim 'sub' is empty")
        return IdentityContext(
            subject=sub,
            username=str(claims.get("username") or ""),
            email=str(claims.get("email") or ""),
            roles=_roles_of(claims.get("roles")),
            token_id=jti,
            issued_at=_int_claim(claims, "iat"),
            expires_at=exp,
            token_hash=hashlib.sha256(token.encode("utf-8")).hexdigest(),
        )

    async def validate_header(self, authorization: Optional[str]) -> IdentityContext:
        return await self.validate(extract_bearer(authorization))


class AuthorizationPolicy:
    """按规则决定是否需要认证、允许哪些角色。"""

    def requires_auth(self, rule) -> bool:
        return bool(rule.auth_required)

    def authorize(self, rule, identity: Optional[IdentityContext]) -> None:
        if not rule.auth_required:
            return
        if identity is None:
            raise TokenError(TokenErrorKind.MISSING)
        if rule.roles and not identity.has_any_role(rule.roles):
            raise GatewayError(
                ErrorCode.UNAUTHORIZED_ACCESS,
                "Access denied: insufficient role",
                details="required one of: " + ",".join(sorted(rule.roles)),
            )

    def authorize_roles(self, roles: Iterable[str], identity: Optional[IdentityContext]) -> None:
        """管理端点使用：要求身份且角色命中其一。"""
        roles = list(roles)
        if identity is None:
            raise TokenError(TokenErrorKind.MISSING)
        if roles and not identity.has_any_role(roles):
            raise GatewayError(
                ErrorCode.UNAUTHORIZED_ACCESS,
                "Access denied: insufficient role",
                details="required one of: " + ",".join(sorted(roles)),
            )


def strip_identity_headers(headers: Headers) -> Headers:
    """移除所有入站 X-User-* 头（大小写不敏感）。"""
    return [(k, v) for k, v in headers if not k.lower().startswith(IDENTITY_HEADER_PREFIX)]


def identity_headers(identity: IdentityContext) -> Headers:
    return [
        (USER_ID_HEADER, identity.subject),
        (USER_NAME_HEADER, identity.username),
        (USER_EMAIL_HEADER, identity.email),
        (USER_ROLES_HEADER, ",".join(identity.roles)),
    ]


def propagate_identity(headers: Headers, identity: Optional[IdentityContext]) -> Headers:
    """剥离入站身份头；有身份时注入四个已校验的身份头。"""
    out = strip_identity_headers(headers)
    if identity is not None:
        out.extend(identity_headers(identity))
    return out


def identity_from_headers(headers: Dict[str, str]) -> Dict[str, Any]:
    """下游视角：由身份头还原声明集 {sub, username, email, roles}。"""
    lower = {k.lower(): v for k, v in headers.items()}
    roles = lower.get(USER_ROLES_HEADER.lower(), "")
    return {
        "sub": lower.get(USER_ID_HEADER.lower(), ""),
        "username": lower.get(USER_NAME_HEADER.lower(), ""),
        "email": lower.get(USER_EMAIL_HEADER.lower(), ""),
        "roles": [r for r in roles.split(",") if r],
    }


__all__ = [
    "IdentityContext",
    "TokenValidator",
    "AuthorizationPolicy",
    "extract_bearer",
    "strip_identity_headers",
    "identity_headers",
    "propagate_identity",
    "identity_from_headers",
    "USER_ID_HEADER",
    "USER_NAME_HEADER",
    "USER_EMAIL_HEADER",
    "USER_ROLES_HEADER",
]
