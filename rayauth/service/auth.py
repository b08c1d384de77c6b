from __future__ import annotations

import asyncio
import random
import re
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rayauth.config import Settings
from rayauth.logging import get_logger
from rayauth.service.email import EmailService
from rayauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from rayauth.service.lockout import LockoutPolicy
from rayauth.service.oauth import OAuthProfile, OAuthService
from rayauth.service.roles import BOOTSTRAP_ADMIN_ROLE, DEFAULT_ROLE, self_register_role
from rayauth.service.sessions import RequestMeta, SessionRegistry
from rayauth.service.tokens import TokenIssuer, hash_token
from rayauth.storage.errors import ConstraintViolation
from rayauth.storage.models import SessionInfo, Tenant, User, utcnow
from rayauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
FORGOT_PASSWORD_MESSAGE = "If this email exists, a reset link has been sent."
BOOTSTRAP_MESSAGE = "Bootstrap successful! You are now the administrator of your company."

TENANT_FEATURES = (
    "inventory",
    "orders",
    "delivery",
    "suppliers",
    "advanced_reports",
    "promotions",
    "multi_store",
    "api",
)
SUBSCRIPTION_PERIOD = timedelta(days=365)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_oauth(self, provider: str, provider_id: str) -> Optional[User]: ...

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]: ...

    def create_user(self, email: str, username: str, **fields: Any) -> User: ...

    def update_last_login(self, user_id: str) -> None: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def increment_failed_login(
        self, user_id: str, threshold: int, lock_duration: timedelta
    ) -> Optional[User]: ...

    def reset_failed_login(self, user_id: str) -> None: ...

    def set_password_reset_token(self, user_id: str, token_hash: str, expires_at) -> None: ...

    def clear_password_reset_token(self, user_id: str) -> None: ...

    def consume_password_reset_token(self, token_hash: str) -> Optional[User]: ...

    def link_oauth_provider(
        self, user_id: str, provider: str, provider_id: str, avatar_url: Optional[str] = None
    ) -> Optional[User]: ...

    def get_tenant_by_code(self, tenant_code: str) -> Optional[Tenant]: ...

    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def delete_tenant(self, tenant_id: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    tenant_id: str


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    user: dict[str, Any]
    is_new_user: Optional[bool] = None
    tenant: Optional[dict[str, Any]] = None
    message: Optional[str] = None
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "session_id": self.session_id,
            "user": self.user,
        }
        for key in ("is_new_user", "tenant", "message"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    token_type: str = "bearer"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def derive_username(
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    *,
    suffix_range: int = 1000,
) -> str:
    """``firstlast`` or the email local part, plus a random numeric suffix."""
    if first_name and last_name:
        base = re.sub(r"\s+", "", f"{first_name.lower()}{last_name.lower()}")
    else:
        base = email.split("@")[0]
    return f"{base}{random.randrange(suffix_range)}"


def derive_tenant_code(tenant_name: str, now_ms: Optional[int] = None) -> str:
    """Uppercased alphanumeric prefix of the name plus a base36 timestamp."""
    prefix = re.sub(r"[^A-Z0-9]", "", tenant_name.upper())[:8]
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    encoded = ""
    while True:
        stamp, rem = divmod(stamp, 36)
        encoded = digits[rem] + encoded
        if stamp == 0:
            break
    return f"{prefix}-{encoded}"


class AuthService:
    """Login, registration, token rotation and password lifecycle.

    Token minting, session bookkeeping and lockout are delegated to
    :class:`TokenIssuer`, :class:`SessionRegistry` and :class:`LockoutPolicy`;
    this class owns the order in which they are consulted and the error
    surfaced for each outcome.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email or EmailService(
            app_name=settings.app_name, frontend_url=settings.frontend_url
        )
        self.tokens = TokenIssuer(settings)
        self.sessions = SessionRegistry(
            store,
            max_sessions=settings.max_sessions_per_user,
            ttl_days=settings.session_ttl_days,
        )
        self.lockout = LockoutPolicy(
            store,
            threshold=settings.max_failed_logins,
            duration=timedelta(minutes=settings.lockout_minutes),
        )
        self.oauth = OAuthService(cache, settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._pending_notifications: set[asyncio.Task] = set()
        self.logger = logger

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_password, password)

    async def verify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify_password, password_hash, password)

    # -- notifications -----------------------------------------------------

    def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        """Dispatch an email without waiting for it; failures are only logged."""

        async def _run() -> None:
            try:
                sent = await asyncio.to_thread(send, *args)
            except Exception as exc:
                self.logger.error(
                    "notification_failed", notification=send.__name__, error=str(exc)
                )
                return
            if not sent:
                self.logger.warning("notification_not_sent", notification=send.__name__)

        task = asyncio.create_task(_run())
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notification sends (shutdown and tests)."""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    # -- issuance ----------------------------------------------------------

    def _open_session(self, user: User, meta: Optional[RequestMeta], **extra: Any) -> AuthResult:
        pair = self.tokens.issue(user)
        session = self.sessions.create_session(user.id, user.tenant_id, pair.refresh_token, meta)
        return AuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            session_id=session.id,
            expires_in=pair.expires_in,
            user=user.summary(),
            **extra,
        )

    # -- login -------------------------------------------------------------

    async def login(
        self, email: str, password: str, meta: Optional[RequestMeta] = None
    ) -> AuthResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.logger.info("login_unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.lockout.ensure_not_locked(user)

        if not user.password_hash:
            provider = user.oauth_provider or "OAuth"
            raise AuthenticationError(
                f"This account uses {provider} sign-in. Please log in with {provider}."
            )

        if not await self.verify_password(user.password_hash, password):
            self.lockout.record_failure(user)
            self.logger.info("login_bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not user.is_active:
            raise AuthenticationError("Account disabled")

        self.lockout.record_success(user)
        self.store.update_last_login(user.id)
        result = self._open_session(user, meta)
        self.logger.info("login_succeeded", user_id=user.id, session_id=result.session_id)
        return result

    # -- registration ------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        tenant_id: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("Email already in use", detail={"field": "email"})

        password_hash = await self.hash_password(password)
        try:
            user = self.store.create_user(
                email,
                username or derive_username(email, first_name, last_name),
                tenant_id=tenant_id,
                role=self_register_role(role).value,
                password_hash=password_hash,
                status="active",
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already in use", detail=exc.detail)

        result = self._open_session(user, meta)
        self._notify(self.email.send_welcome, user.email, user.username)
        self.logger.info("user_registered", user_id=user.id, tenant_id=user.tenant_id)
        return result

    # -- bootstrap ---------------------------------------------------------

    def verify_activation_code(self, code: Optional[str]) -> dict[str, Any]:
        valid = bool(code) and code.strip().upper() == self.settings.activation_code.strip().upper()
        return {
            "valid": valid,
            "message": "Valid activation code" if valid else "Invalid activation code",
        }

    async def bootstrap(
        self,
        activation_code: Optional[str],
        *,
        tenant_name: str,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        tenant_code: Optional[str] = None,
        currency: Optional[str] = None,
        timezone_name: Optional[str] = None,
        phone: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        """Provision a tenant and its first PDG account.

        The two writes are not transactional across stores; if the admin
        cannot be created the tenant is deleted again.
        """
        if not self.verify_activation_code(activation_code)["valid"]:
            raise BadRequestError("Invalid activation code")

        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("An account with this email already exists", detail={"field": "email"})

        code = tenant_code or derive_tenant_code(tenant_name)
        if self.store.get_tenant_by_code(code):
            raise ConflictError("This tenant code already exists", detail={"field": "tenant_code"})

        now = utcnow()
        owner_name = f"{first_name or ''} {last_name or ''}".strip() or email.split("@")[0]
        tenant = Tenant.new(
            code,
            tenant_name,
            legal_name=tenant_name,
            email=email,
            phone=phone,
            owner_name=owner_name,
            owner_email=email,
            owner_phone=phone,
            currency=currency or "XOF",
            timezone=timezone_name or "Africa/Abidjan",
            features={name: True for name in TENANT_FEATURES},
            subscription_start_date=now,
            subscription_end_date=now + SUBSCRIPTION_PERIOD,
        )
        try:
            tenant = self.store.create_tenant(tenant)
        except ConstraintViolation as exc:
            raise ConflictError("This tenant code already exists", detail=exc.detail)
        self.logger.info("bootstrap_tenant_created", tenant_id=tenant.id, tenant_code=tenant.tenant_code)

        password_hash = await self.hash_password(password)
        try:
            user = self.store.create_user(
                email,
                derive_username(email, first_name, last_name, suffix_range=100),
                tenant_id=str(tenant.id),
                role=BOOTSTRAP_ADMIN_ROLE.value,
                password_hash=password_hash,
                status="active",
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
        except Exception as exc:
            self.store.delete_tenant(tenant.id)
            self.logger.error(
                "bootstrap_admin_failed", tenant_id=tenant.id, error_type=type(exc).__name__
            )
            if isinstance(exc, ConstraintViolation):
                raise ConflictError(
                    "An account with this email already exists", detail=exc.detail
                )
            raise
        self.logger.info("bootstrap_admin_created", user_id=user.id, tenant_id=tenant.id)

        result = self._open_session(
            user,
            meta,
            tenant={"id": tenant.id, "tenant_code": tenant.tenant_code, "name": tenant.name},
            message=BOOTSTRAP_MESSAGE,
        )
        self._notify(self.email.send_welcome, user.email, user.username)
        return result

    # -- refresh -----------------------------------------------------------

    async def refresh(
        self, raw_refresh_token: str, meta: Optional[RequestMeta] = None
    ) -> RefreshResult:
        payload = self.tokens.verify_refresh(raw_refresh_token)
        if not payload:
            raise AuthenticationError("Invalid or expired refresh token")

        user = self.store.get_user(str(payload["sub"]))
        if not user or not user.is_active:
            raise AuthenticationError("Invalid user")

        # Validate-then-rotate must not interleave with another refresh of the same user
        with self.sessions.locked(user.id):
            session = self.sessions.validate_refresh_token(user.id, raw_refresh_token)
            if session is None:
                revoked = self.sessions.revoke_all_sessions(user.id)
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=user.id,
                    revoked_sessions=revoked,
                    ip_address=meta.ip_address if meta else None,
                )
                raise AuthenticationError(
                    "Invalid refresh token. All sessions have been revoked."
                )
            pair = self.tokens.issue(user)
            self.sessions.rotate_refresh_token(session.id, pair.refresh_token)

        return RefreshResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            session_id=session.id,
            expires_in=pair.expires_in,
        )

    # -- logout / sessions -------------------------------------------------

    async def logout(self, user_id: str, session_id: Optional[str] = None) -> dict[str, str]:
        if session_id:
            self.sessions.revoke_session(session_id, user_id)
        self.logger.info("logout", user_id=user_id, session_id=session_id)
        return {"message": "Logged out successfully"}

    async def logout_all(self, user_id: str) -> dict[str, Any]:
        count = self.sessions.revoke_all_sessions(user_id)
        return {"message": "All sessions have been revoked", "revoked_sessions": count}

    async def get_sessions(self, user_id: str) -> list[SessionInfo]:
        return self.sessions.get_user_sessions(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> dict[str, str]:
        if not self.sessions.revoke_session(session_id, user_id):
            raise NotFoundError("Session not found")
        return {"message": "Session revoked"}

    async def revoke_other_sessions(self, user_id: str, keep_session_id: str) -> dict[str, Any]:
        count = self.sessions.revoke_other_sessions(user_id, keep_session_id)
        return {"message": f"{count} other session(s) revoked", "revoked_count": count}

    def touch_session(self, user_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session and session.user_id == user_id and session.is_active:
            self.sessions.touch_session(session_id)

    def cleanup_expired_sessions(self) -> int:
        return self.sessions.cleanup_expired_sessions()

    def get_session_stats(self) -> dict[str, int]:
        return self.sessions.get_session_stats()

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        profile = user.summary()
        profile.update(
            {
                "phone": user.phone,
                "avatar_url": user.avatar_url,
                "status": user.status,
                "email_verified": user.email_verified,
                "oauth_provider": user.oauth_provider,
                "last_login": user.last_login.isoformat() if user.last_login else None,
            }
        )
        return profile

    # -- password lifecycle ------------------------------------------------

    async def forgot_password(self, email: str) -> dict[str, str]:
        user = self.store.get_user_by_email(normalize_email(email))
        if user and user.password_hash:
            raw_token = secrets.token_hex(32)
            expires_at = utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
            self.store.set_password_reset_token(user.id, hash_token(raw_token), expires_at)
            self._notify(self.email.send_password_reset, user.email, raw_token)
            self.logger.info("password_reset_requested", user_id=user.id)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(self, raw_token: str, new_password: str) -> dict[str, str]:
        # Consumed before hashing so a concurrent reset with the same token finds nothing
        user = self.store.consume_password_reset_token(hash_token(raw_token))
        if not user:
            raise BadRequestError("Invalid or expired token")
        if not user.password_reset_expires or user.password_reset_expires < utcnow():
            raise BadRequestError("Token expired. Please request a new one.")

        password_hash = await self.hash_password(new_password)
        self.store.update_password_hash(user.id, password_hash)
        revoked = self.sessions.revoke_all_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, revoked_sessions=revoked)
        return {"message": "Password reset successfully. Please log in again."}

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> dict[str, str]:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        if not user.password_hash:
            raise BadRequestError(
                f"This account uses OAuth ({user.oauth_provider}). The password cannot be changed."
            )
        if not await self.verify_password(user.password_hash, current_password):
            raise BadRequestError("Current password is incorrect")
        if await self.verify_password(user.password_hash, new_password):
            raise BadRequestError("The new password must differ from the current one")

        self.store.update_password_hash(user.id, await self.hash_password(new_password))
        self._notify(self.email.send_password_changed, user.email, user.username)
        self.logger.info("password_changed", user_id=user.id)
        return {"message": "Password changed successfully"}

    # -- oauth -------------------------------------------------------------

    async def handle_oauth_login(
        self, profile: OAuthProfile, meta: Optional[RequestMeta] = None
    ) -> AuthResult:
        user = self.store.get_user_by_oauth(profile.provider, profile.provider_id)
        email = normalize_email(profile.email) if profile.email else None

        if not user and email:
            existing = self.store.get_user_by_email(email)
            if existing:
                self.store.link_oauth_provider(
                    existing.id, profile.provider, profile.provider_id, profile.avatar_url
                )
                user = self.store.get_user(existing.id)
                self.logger.info("oauth_linked", user_id=existing.id, provider=profile.provider)

        if not user:
            if not email:
                raise AuthenticationError("OAuth provider did not return an email address")
            try:
                user = self.store.create_user(
                    email,
                    profile.username or email.split("@")[0] or f"user_{profile.provider_id}",
                    tenant_id=self.settings.default_tenant_id,
                    role=DEFAULT_ROLE.value,
                    status="active",
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    avatar_url=profile.avatar_url,
                    email_verified=True,
                    oauth_provider=profile.provider,
                    oauth_provider_id=profile.provider_id,
                )
            except ConstraintViolation as exc:
                raise ConflictError("Email already in use", detail=exc.detail)
            self.logger.info("oauth_user_created", user_id=user.id, provider=profile.provider)
            self._notify(self.email.send_oauth_welcome, user.email, profile.provider)

        if not user.is_active:
            raise AuthenticationError("Account disabled")

        is_new_user = user.last_login is None
        self.store.update_last_login(user.id)
        result = self._open_session(user, meta, is_new_user=is_new_user)
        result.user.update({"avatar_url": user.avatar_url, "oauth_provider": user.oauth_provider})
        return result

    # -- bearer auth -------------------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        payload = self.tokens.verify_access(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        user = self.store.get_user(str(payload["sub"]))
        if not user or not user.is_active:
            raise AuthenticationError("Invalid user")
        return AuthContext(
            user_id=user.id, email=user.email, role=user.role, tenant_id=user.tenant_id
        )
