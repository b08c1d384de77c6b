from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from rayauth.logging import get_logger
from rayauth.storage.errors import ConstraintViolation
from rayauth.storage.models import Session, Tenant, User, utcnow

_T = TypeVar("_T")


class MemoryStore:
    """In-process credential, tenant and session store.

    State is mirrored to ``{fs_root}/state/memory_store.json`` after every
    write so that a development server survives restarts.
    """

    def __init__(self, fs_root: str = "/tmp/rayauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations; nested acquisitions happen via helpers
        self._data_lock = threading.RLock()
        self._user_locks: Dict[str, threading.Lock] = {}
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- per-user serialization -------------------------------------------

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Serialize session mutations for a single user."""
        with self._data_lock:
            lock = self._user_locks.setdefault(user_id, threading.Lock())
        with lock:
            yield

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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                tenant_id=tenant_id,
                role=role,
                status=status,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                avatar_url=avatar_url,
                email_verified=email_verified,
                oauth_provider=oauth_provider,
                oauth_provider_id=oauth_provider_id,
            )
            self.users[user.id] = user
            self._persist_state()
            return dataclasses.replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return dataclasses.replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return dataclasses.replace(user) if user else None

    def get_user_by_oauth(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.oauth_provider == provider and u.oauth_provider_id == provider_id
                ),
                None,
            )
            return dataclasses.replace(user) if user else None

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token_hash),
                None,
            )
            return dataclasses.replace(user) if user else None

    def _update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return dataclasses.replace(user)

    def update_last_login(self, user_id: str) -> None:
        self._update_user(user_id, last_login=utcnow())

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, password_hash=password_hash)

    def increment_failed_login(
        self, user_id: str, threshold: int, lock_duration: timedelta
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            attempts = user.failed_login_attempts + 1
            locked_until = user.locked_until
            if attempts >= threshold:
                locked_until = utcnow() + lock_duration
            return self._update_user(
                user_id, failed_login_attempts=attempts, locked_until=locked_until
            )

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
        """Find and clear a reset ticket in one step; the copy keeps its expiry."""
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token_hash),
                None,
            )
            if not user:
                return None
            consumed = dataclasses.replace(user)
            self._update_user(user.id, password_reset_token=None, password_reset_expires=None)
            return consumed

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
        with self._data_lock:
            if any(t.tenant_code == tenant.tenant_code for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant code already exists", {"field": "tenant_code"}
                )
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_code(self, tenant_code: str) -> Optional[Tenant]:
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.tenant_code == tenant_code), None
            )

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._data_lock:
            removed = self.tenants.pop(tenant_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = dataclasses.replace(session)
            self._persist_state()
            return dataclasses.replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return dataclasses.replace(sess) if sess else None

    def list_active_sessions(
        self, user_id: str, *, order_by: str = "created_at"
    ) -> List[Session]:
        """Active sessions; ``created_at`` ascending or ``last_activity`` descending."""
        with self._data_lock:
            active = [
                dataclasses.replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active
            ]
        if order_by == "last_activity":
            return sorted(active, key=lambda s: s.last_activity, reverse=True)
        return sorted(active, key=lambda s: s.created_at)

    def find_active_session(self, user_id: str, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.user_id == user_id
                    and s.is_active
                    and s.refresh_token_hash == token_hash
                ),
                None,
            )
            return dataclasses.replace(sess) if sess else None

    def deactivate_sessions(self, session_ids: List[str]) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for session_id in session_ids:
                sess = self.sessions.get(session_id)
                if sess and sess.is_active:
                    sess.is_active = False
                    sess.updated_at = now
                    count += 1
            if count:
                self._persist_state()
        return count

    def update_session_token(self, session_id: str, token_hash: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            now = utcnow()
            sess.refresh_token_hash = token_hash
            sess.last_activity = now
            sess.updated_at = now
            self._persist_state()
            return True

    def touch_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity = utcnow()
            self._persist_state()

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return False
            sess.is_active = False
            sess.updated_at = utcnow()
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.is_active and sid != except_session_id
            ]
            return self.deactivate_sessions(stale)

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                sid
                for sid, sess in self.sessions.items()
                if sess.is_active and sess.expires_at < cutoff
            ]
            return self.deactivate_sessions(expired)

    def session_stats(self) -> Dict[str, int]:
        """Active sessions, deactivated rows (expired or revoked) and distinct live users."""
        with self._data_lock:
            active = [s for s in self.sessions.values() if s.is_active]
            expired = [s for s in self.sessions.values() if not s.is_active]
            return {
                "total_active": len(active),
                "total_expired": len(expired),
                "unique_users": len({s.user_id for s in active}),
            }

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.tenants = {
            t["id"]: self._deserialize(Tenant, t) for t in data.get("tenants", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        return True

    @staticmethod
    def _serialize(obj: Any) -> dict:
        payload = dataclasses.asdict(obj)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload

    @staticmethod
    def _deserialize(cls: Type[_T], data: dict) -> _T:
        known = {f.name: f for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, str) and known[key].type in (
                "datetime",
                "Optional[datetime]",
            ):
                value = datetime.fromisoformat(value)
            values[key] = value
        return cls(**values)
