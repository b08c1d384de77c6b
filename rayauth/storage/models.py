from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    tenant_id: str
    role: str = "VENDEUR"
    status: str = "active"
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    oauth_provider: Optional[str] = None
    oauth_provider_id: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def is_locked(self, now: datetime | None = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    def summary(self) -> Dict[str, Optional[str]]:
        """Public projection returned alongside issued tokens."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "tenant_id": self.tenant_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }


@dataclass
class Tenant:
    id: str
    tenant_code: str
    name: str
    legal_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    owner_phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    business_type: Optional[str] = None
    status: str = "ACTIVE"
    plan: str = "PROFESSIONAL"
    currency: str = "XOF"
    timezone: str = "Africa/Abidjan"
    language: str = "fr"
    max_users: int = 10
    max_products: int = 500
    max_stores: int = 3
    max_orders_per_month: int = 5000
    storage_quota_gb: int = 5
    features: Dict[str, bool] = field(default_factory=dict)
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, tenant_code: str, name: str, **fields) -> "Tenant":
        return cls(id=str(uuid.uuid4()), tenant_code=tenant_code, name=name, **fields)


@dataclass
class Session:
    id: str
    user_id: str
    tenant_id: str
    refresh_token_hash: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        refresh_token_hash: str,
        ttl_days: int = 7,
        *,
        device_info: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=now + timedelta(days=ttl_days),
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
            last_activity=now,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class SessionInfo:
    """Session projection without secret material."""

    id: str
    device_info: Optional[str]
    ip_address: Optional[str]
    last_activity: datetime
    created_at: datetime
    is_active: bool

    @classmethod
    def from_session(cls, session: Session) -> "SessionInfo":
        return cls(
            id=session.id,
            device_info=session.device_info,
            ip_address=session.ip_address,
            last_activity=session.last_activity,
            created_at=session.created_at,
            is_active=session.is_active,
        )
