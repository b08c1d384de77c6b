from __future__ import annotations

from dataclasses import dataclass
from typing import ContextManager, Dict, List, Optional, Protocol

from rayauth.logging import get_logger
from rayauth.service.tokens import hash_token
from rayauth.storage.models import Session, SessionInfo, utcnow

logger = get_logger(__name__)

# Checked in order; first match wins
_DEVICE_MARKERS = (
    ("Mobile", "Mobile"),
    ("Tablet", "Tablet"),
    ("Windows", "Windows Desktop"),
    ("Mac", "Mac Desktop"),
    ("Linux", "Linux Desktop"),
    ("Postman", "Postman"),
)


def parse_device_info(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown device"
    for marker, label in _DEVICE_MARKERS:
        if marker in user_agent:
            return label
    return "Desktop"


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionStore(Protocol):
    def user_lock(self, user_id: str) -> ContextManager[None]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str, *, order_by: str = ...) -> List[Session]: ...

    def find_active_session(self, user_id: str, token_hash: str) -> Optional[Session]: ...

    def deactivate_sessions(self, session_ids: List[str]) -> int: ...

    def update_session_token(self, session_id: str, token_hash: str) -> bool: ...

    def touch_session(self, session_id: str) -> None: ...

    def revoke_session(self, session_id: str, user_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def deactivate_expired_sessions(self, now=None) -> int: ...

    def session_stats(self) -> Dict[str, int]: ...


class SessionRegistry:
    """Refresh-token-bound sessions with a per-user cap.

    Only the SHA-256 of a refresh token is ever stored. Every mutation that
    reads before it writes runs under the store's per-user lock, so the
    caller may compose several calls inside :meth:`locked` without racing
    a concurrent refresh for the same user.
    """

    def __init__(self, store: SessionStore, *, max_sessions: int = 5, ttl_days: int = 7) -> None:
        self.store = store
        self.max_sessions = max_sessions
        self.ttl_days = ttl_days
        self.logger = logger

    def locked(self, user_id: str) -> ContextManager[None]:
        return self.store.user_lock(user_id)

    def create_session(
        self,
        user_id: str,
        tenant_id: str,
        refresh_token: str,
        meta: Optional[RequestMeta] = None,
    ) -> Session:
        meta = meta or RequestMeta()
        session = Session.new(
            user_id,
            tenant_id,
            hash_token(refresh_token),
            ttl_days=self.ttl_days,
            device_info=parse_device_info(meta.user_agent),
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        with self.locked(user_id):
            active = self.store.list_active_sessions(user_id, order_by="created_at")
            if len(active) >= self.max_sessions:
                overflow = len(active) - self.max_sessions + 1
                evicted = self.store.deactivate_sessions([s.id for s in active[:overflow]])
                self.logger.info(
                    "sessions_evicted", user_id=user_id, count=evicted, cap=self.max_sessions
                )
            created = self.store.create_session(session)
        self.logger.info(
            "session_created",
            user_id=user_id,
            session_id=created.id,
            device=created.device_info,
        )
        return created

    def validate_refresh_token(self, user_id: str, raw_token: str) -> Optional[Session]:
        """Active session holding this exact token, or None.

        An expired match is deactivated on the spot.
        """
        session = self.store.find_active_session(user_id, hash_token(raw_token))
        if session is None:
            return None
        if session.is_expired():
            self.store.deactivate_sessions([session.id])
            self.logger.info("session_expired_on_use", user_id=user_id, session_id=session.id)
            return None
        return session

    def rotate_refresh_token(self, session_id: str, new_raw_token: str) -> None:
        self.store.update_session_token(session_id, hash_token(new_raw_token))

    def touch_session(self, session_id: str) -> None:
        self.store.touch_session(session_id)

    def get_user_sessions(self, user_id: str) -> List[SessionInfo]:
        return [
            SessionInfo.from_session(s)
            for s in self.store.list_active_sessions(user_id, order_by="last_activity")
        ]

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, user_id)
        if revoked:
            self.logger.info("session_revoked", user_id=user_id, session_id=session_id)
        return revoked

    def revoke_all_sessions(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    def revoke_other_sessions(self, user_id: str, keep_session_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id, except_session_id=keep_session_id)
        self.logger.info(
            "sessions_revoked_others", user_id=user_id, kept_session_id=keep_session_id, count=count
        )
        return count

    def cleanup_expired_sessions(self) -> int:
        count = self.store.deactivate_expired_sessions(utcnow())
        if count > 0:
            self.logger.info("expired_sessions_cleaned", count=count)
        return count

    def get_session_stats(self) -> Dict[str, int]:
        return self.store.session_stats()
