from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from hydroline_identity.config import Settings
from hydroline_identity.logging import get_logger
from hydroline_identity.service.cookies import (
    DONT_REMEMBER,
    REFRESH_TOKEN,
    SESSION_TOKEN,
    extract_tokens,
)
from hydroline_identity.service.credentials import AUTHME_NOT_BOUND, CredentialStoreClient
from hydroline_identity.service.errors import BusinessRuleError, NotFoundError
from hydroline_identity.service.rbac import RbacService
from hydroline_identity.storage.common import normalize_username
from hydroline_identity.storage.models import AUTHME_PROVIDER, ExternalBinding, Session, User
from hydroline_identity.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remember_me: bool = True,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str) -> None: ...

    def get_binding_by_username(
        self, provider: str, username_lower: str
    ) -> Optional[ExternalBinding]: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: Optional[str] = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, key: str) -> bool:
        return key in self.permissions


@dataclass
class LoginResult:
    user: User
    session: Session
    binding: ExternalBinding
    tokens: Dict[str, str]
    cookies: List[str]


class AuthService:
    """Local sessions, access tokens and cached permission resolution."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        credentials: CredentialStoreClient,
        rbac: RbacService,
        provider: str = AUTHME_PROVIDER,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.credentials = credentials
        self.rbac = rbac
        self.provider = provider
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=30)
        # user_id -> (expires_at_ts, permissions) when Redis is not available
        self._local_permissions: Dict[str, Tuple[float, frozenset[str]]] = {}
        self._state_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.utcnow()

    # sessions
    def create_session(
        self,
        user_id: str,
        *,
        remember_me: bool = True,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        ttl = self.settings.session_ttl_minutes if remember_me else 24 * 60
        return self.store.create_session(
            user_id,
            ttl_minutes=ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
            remember_me=remember_me,
        )

    def revoke_session(self, session_id: str) -> None:
        self.store.revoke_session(session_id)

    def session_cookies(self, session: Session) -> List[str]:
        """Set-Cookie values carrying ``session`` under the configured prefix."""
        prefix = self.settings.cookie_prefix
        expires = format_datetime(session.expires_at.replace(tzinfo=timezone.utc), usegmt=True)
        attrs = f"Path=/; Expires={expires}; HttpOnly; SameSite=Lax"
        cookies = [
            f"{prefix}.{SESSION_TOKEN}={session.id}; {attrs}",
            f"{prefix}.{REFRESH_TOKEN}={session.id}; {attrs}",
        ]
        if not session.remember_me:
            cookies.append(f"{prefix}.{DONT_REMEMBER}=true; Path=/; HttpOnly; SameSite=Lax")
        return cookies

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.expires_at <= self._now() - self._clock_skew_leeway:
            return None
        user = self.store.get_user(sess.user_id)
        if not user:
            return None
        permissions = await self.effective_permissions(user.id)
        return AuthContext(user_id=user.id, session_id=sess.id, permissions=permissions)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str]
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            token_ctx = await self._authenticate_access_token(token)
            if token_ctx:
                return token_ctx
        return await self.resolve_session(session_id)

    # credential store login
    async def login_with_credentials(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = True,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        """Sign in with external credentials; the account must already be bound."""
        account = await self.credentials.verify_credentials(identifier.strip(), password)
        binding = self.store.get_binding_by_username(
            self.provider, normalize_username(account.username)
        )
        if not binding:
            self.logger.info("credential_login_unbound", username=account.username)
            raise BusinessRuleError(
                "external account is not bound to any user", AUTHME_NOT_BOUND
            )
        user = self.store.get_user(binding.user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": binding.user_id})
        session = self.create_session(
            user.id, remember_me=remember_me, user_agent=user_agent, ip_addr=ip_addr
        )
        self.store.record_login(user.id)
        cookies = self.session_cookies(session)
        # headers folded the way an HTTP client joins repeated Set-Cookie
        extracted = extract_tokens(", ".join(cookies))
        tokens = self._issue_tokens(user, session)
        tokens["refresh_token"] = extracted.token
        self.logger.info(
            "credential_login_succeeded", user_id=user.id, binding_id=binding.id
        )
        return LoginResult(
            user=user, session=session, binding=binding, tokens=tokens, cookies=extracted.cookies
        )

    # permission cache
    async def effective_permissions(self, user_id: str) -> frozenset[str]:
        ttl = self.settings.permission_cache_ttl_seconds
        if self.cache:
            try:
                cached = await self.cache.get_permissions(user_id)
            except RedisError as exc:
                self.logger.warning("permission_cache_read_failed", user_id=user_id, error=str(exc))
                cached = None
            if cached is not None:
                return frozenset(cached)
        else:
            with self._state_lock:
                entry = self._local_permissions.get(user_id)
            if entry and entry[0] > time.time():
                return entry[1]
        permissions = self.rbac.resolve_effective_permissions(user_id)
        if self.cache:
            try:
                await self.cache.set_permissions(user_id, sorted(permissions), ttl)
            except RedisError as exc:
                self.logger.warning("permission_cache_write_failed", user_id=user_id, error=str(exc))
        else:
            with self._state_lock:
                self._local_permissions[user_id] = (time.time() + ttl, permissions)
        return permissions

    async def invalidate_permissions(self) -> None:
        """Drop every cached permission set after an RBAC change."""
        with self._state_lock:
            self._local_permissions.clear()
        if self.cache:
            try:
                await self.cache.invalidate_permissions()
            except RedisError as exc:
                self.logger.warning("permission_cache_invalidate_failed", error=str(exc))

    # tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_tokens(self, user: User, session: Session) -> dict[str, str]:
        access_exp = int(
            (
                datetime.now(timezone.utc)
                + timedelta(minutes=self.settings.access_token_ttl_minutes)
            ).timestamp()
        )
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "sid": session.id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": access_exp,
        }
        return {
            "access_token": self._encode_jwt(access_payload),
            "refresh_token": session.id,
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(access_exp, timezone.utc)
            .replace(tzinfo=None)
            .isoformat(),
        }

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1]

    async def _authenticate_access_token(self, token: str) -> Optional[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or sess.expires_at <= self._now() - self._clock_skew_leeway:
            return None
        if sess.user_id != payload.get("sub"):
            return None
        user = self.store.get_user(sess.user_id)
        if not user:
            return None
        permissions = await self.effective_permissions(user.id)
        return AuthContext(user_id=user.id, session_id=sess.id, permissions=permissions)
