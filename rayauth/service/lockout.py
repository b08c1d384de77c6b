from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from rayauth.logging import get_logger
from rayauth.service.errors import AccountLockedError
from rayauth.storage.models import User, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def increment_failed_login(
        self, user_id: str, threshold: int, lock_duration: timedelta
    ) -> Optional[User]: ...

    def reset_failed_login(self, user_id: str) -> None: ...


@dataclass
class LockoutPolicy:
    """Consecutive-failure lockout.

    OPEN until ``threshold`` failures accumulate, then LOCKED for a fixed
    ``duration``. The lock lapses on its own; the next login after expiry
    sees an OPEN account without any write.
    """

    store: LockoutStore
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)

    @staticmethod
    def remaining_minutes(user: User, now: datetime | None = None) -> int:
        if user.locked_until is None:
            return 0
        remaining = (user.locked_until - (now or utcnow())).total_seconds()
        return max(0, math.ceil(remaining / 60))

    def ensure_not_locked(self, user: User, now: datetime | None = None) -> None:
        now = now or utcnow()
        if user.is_locked(now):
            minutes = self.remaining_minutes(user, now)
            logger.info("login_rejected_locked", user_id=user.id, retry_after_minutes=minutes)
            raise AccountLockedError(minutes)

    def record_failure(self, user: User) -> Optional[User]:
        updated = self.store.increment_failed_login(user.id, self.threshold, self.duration)
        if updated and updated.failed_login_attempts >= self.threshold:
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat() if updated.locked_until else None,
            )
        return updated

    def record_success(self, user: User) -> None:
        if user.failed_login_attempts > 0:
            self.store.reset_failed_login(user.id)
