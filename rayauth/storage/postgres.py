from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from rayauth.logging import get_logger
from rayauth.storage.errors import ConstraintViolation
from rayauth.storage.models import Session, Tenant, User, utcnow

_REQUIRED_TABLES = ("users", "tenants", "user_sessions")

_USER_UPDATABLE = {
    "last_login",
    "password_hash",
    "failed_login_attempts",
    "locked_until",
    "password_reset_token",
    "password_reset_expires",
    "oauth_provider",
    "oauth_provider_id",
    "email_verified",
    "avatar_url",
}


class PostgresStore:
    """Postgres-backed credential, tenant and session store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Hold a session-level advisory lock keyed on the user id.

        The lock lives on its own pooled connection, so statements issued
        inside the block see each other's commits while every other
        instance contending for the same user waits.
        """
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (user_id,))
            try:
                yield
            finally:
                conn.execute(
                    "SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (user_id,)
                )

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            tenant_id=str(row["tenant_id"]),
            role=row.get("role", "VENDEUR"),
            status=row.get("status", "active"),
            password_hash=row.get("password_hash"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            email_verified=row.get("email_verified", False),
            oauth_provider=row.get("oauth_provider"),
            oauth_provider_id=row.get("oauth_provider_id"),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        ip = row.get("ip_address")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=str(ip) if ip is not None else None,
            user_agent=row.get("user_agent"),
            is_active=row.get("is_active", True),
            last_activity=row.get("last_activity") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        features = row.get("features") or {}
        if isinstance(features, str):
            features = json.loads(features)
        return Tenant(
            id=str(row["id"]),
            tenant_code=row["tenant_code"],
            name=row["name"],
            legal_name=row.get("legal_name"),
            email=row.get("email"),
            phone=row.get("phone"),
            owner_name=row.get("owner_name"),
            owner_email=row.get("owner_email"),
            owner_phone=row.get("owner_phone"),
            address=row.get("address"),
            city=row.get("city"),
            country=row.get("country"),
            business_type=row.get("business_type"),
            status=row.get("status", "ACTIVE"),
            plan=row.get("plan", "PROFESSIONAL"),
            currency=row.get("currency", "XOF"),
            timezone=row.get("timezone", "Africa/Abidjan"),
            language=row.get("language", "fr"),
            max_users=row.get("max_users", 10),
            max_products=row.get("max_products", 500),
            max_stores=row.get("max_stores", 3),
            max_orders_per_month=row.get("max_orders_per_month", 5000),
            storage_quota_gb=row.get("storage_quota_gb", 5),
            features=features,
            subscription_start_date=row.get("subscription_start_date"),
            subscription_end_date=row.get("subscription_end_date"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        *,
        tenant_id: str,
        role: str,
        password_hash: Optional[str] = None,
        status: str = "active",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_provider_id: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (
                        email, username, tenant_id, role, status, password_hash,
                        first_name, last_name, phone, avatar_url, email_verified,
                        oauth_provider, oauth_provider_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email,
                        username,
                        tenant_id,
                        role,
                        status,
                        password_hash,
                        first_name,
                        last_name,
                        phone,
                        avatar_url,
                        email_verified,
                        oauth_provider,
                        oauth_provider_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM users WHERE {where}", params).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def get_user_by_oauth(self, provider: str, provider_id: str) -> Optional[User]:
        return self._fetch_user(
            "oauth_provider = %s AND oauth_provider_id = %s", (provider, provider_id)
        )

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        return self._fetch_user("password_reset_token = %s", (token_hash,))

    def _update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"cannot update user columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*fields.values(), user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_last_login(self, user_id: str) -> None:
        self._update_user(user_id, last_login=utcnow())

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, password_hash=password_hash)

    def increment_failed_login(
        self, user_id: str, threshold: int, lock_duration: timedelta
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN now() + %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (threshold, lock_duration, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def reset_failed_login(self, user_id: str) -> None:
        self._update_user(user_id, failed_login_attempts=0, locked_until=None)

    def set_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        self._update_user(
            user_id, password_reset_token=token_hash, password_reset_expires=expires_at
        )

    def clear_password_reset_token(self, user_id: str) -> None:
        self._update_user(user_id, password_reset_token=None, password_reset_expires=None)

    def consume_password_reset_token(self, token_hash: str) -> Optional[User]:
        """Clear the ticket matching ``token_hash`` and return its owner.

        The returned user keeps the consumed ticket's expiry; only one caller
        can match a given hash.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH ticket AS (
                    SELECT id, password_reset_token, password_reset_expires
                    FROM users
                    WHERE password_reset_token = %s
                    FOR UPDATE
                )
                UPDATE users u
                SET password_reset_token = NULL,
                    password_reset_expires = NULL,
                    updated_at = now()
                FROM ticket
                WHERE u.id = ticket.id
                RETURNING u.*,
                    ticket.password_reset_token AS consumed_token,
                    ticket.password_reset_expires AS consumed_expires
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        row["password_reset_token"] = row["consumed_token"]
        row["password_reset_expires"] = row["consumed_expires"]
        return self._user_from_row(row)

    def link_oauth_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        fields: Dict[str, Any] = {
            "oauth_provider": provider,
            "oauth_provider_id": provider_id,
            "email_verified": True,
        }
        if avatar_url:
            fields["avatar_url"] = avatar_url
        return self._update_user(user_id, **fields)

    # -- tenants -----------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenants (
                        id, tenant_code, name, legal_name, email, phone, owner_name,
                        owner_email, owner_phone, address, city, country, business_type,
                        status, plan, currency, timezone, language, max_users,
                        max_products, max_stores, max_orders_per_month, storage_quota_gb,
                        features, subscription_start_date, subscription_end_date
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        tenant.tenant_code,
                        tenant.name,
                        tenant.legal_name,
                        tenant.email,
                        tenant.phone,
                        tenant.owner_name,
                        tenant.owner_email,
                        tenant.owner_phone,
                        tenant.address,
                        tenant.city,
                        tenant.country,
                        tenant.business_type,
                        tenant.status,
                        tenant.plan,
                        tenant.currency,
                        tenant.timezone,
                        tenant.language,
                        tenant.max_users,
                        tenant.max_products,
                        tenant.max_stores,
                        tenant.max_orders_per_month,
                        tenant.storage_quota_gb,
                        json.dumps(tenant.features),
                        tenant.subscription_start_date,
                        tenant.subscription_end_date,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant code already exists", {"field": "tenant_code"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_code(self, tenant_code: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE tenant_code = %s", (tenant_code,)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM tenants WHERE id = %s", (tenant_id,))
            return cur.rowcount > 0

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (
                        id, user_id, tenant_id, refresh_token_hash, device_info,
                        ip_address, user_agent, is_active, last_activity, expires_at,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.tenant_id,
                        session.refresh_token_hash,
                        session.device_info,
                        session.ip_address,
                        session.user_agent,
                        session.is_active,
                        session.last_activity,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(
        self, user_id: str, *, order_by: str = "created_at"
    ) -> List[Session]:
        """Active sessions; ``created_at`` ascending or ``last_activity`` descending."""
        order = "last_activity DESC" if order_by == "last_activity" else "created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_sessions WHERE user_id = %s AND is_active ORDER BY {order}",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def find_active_session(self, user_id: str, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND refresh_token_hash = %s AND is_active
                """,
                (user_id, token_hash),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_sessions(self, session_ids: List[str]) -> int:
        if not session_ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                WHERE id = ANY(%s) AND is_active
                """,
                (list(session_ids),),
            )
            return cur.rowcount

    def update_session_token(self, session_id: str, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions
                SET refresh_token_hash = %s, last_activity = now(), updated_at = now()
                WHERE id = %s
                """,
                (token_hash, session_id),
            )
            return cur.rowcount > 0

    def touch_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_sessions SET last_activity = now() WHERE id = %s",
                (session_id,),
            )

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                WHERE id = %s AND user_id = %s
                """,
                (session_id, user_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                WHERE user_id = %s AND is_active AND (%s::uuid IS NULL OR id <> %s::uuid)
                """,
                (user_id, except_session_id, except_session_id),
            )
            return cur.rowcount

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                WHERE is_active AND expires_at < %s
                """,
                (now or utcnow(),),
            )
            return cur.rowcount

    def session_stats(self) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    count(*) FILTER (WHERE is_active) AS total_active,
                    count(*) FILTER (WHERE NOT is_active) AS total_expired,
                    count(DISTINCT user_id) FILTER (WHERE is_active) AS unique_users
                FROM user_sessions
                """
            ).fetchone()
        return {
            "total_active": int(row["total_active"] or 0),
            "total_expired": int(row["total_expired"] or 0),
            "unique_users": int(row["unique_users"] or 0),
        }
