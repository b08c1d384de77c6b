"""Unit tests for the consecutive-failure lockout policy."""

from datetime import timedelta

import pytest

from rayauth.service.errors import AccountLockedError
from rayauth.service.lockout import LockoutPolicy
from rayauth.storage.memory import MemoryStore
from rayauth.storage.models import utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def policy(store):
    return LockoutPolicy(store, threshold=5, duration=timedelta(minutes=15))


@pytest.fixture
def user(store):
    return store.create_user("a@x.com", "a1", tenant_id="t1", role="VENDEUR", password_hash="x")


class TestRecordFailure:
    def test_counter_increments_below_threshold(self, policy, store, user):
        """Failures below the threshold only bump the counter."""
        for _ in range(4):
            policy.record_failure(user)

        current = store.get_user(user.id)
        assert current.failed_login_attempts == 4
        assert current.locked_until is None

    def test_threshold_sets_lock_window(self, policy, store, user):
        """The fifth failure locks the account for the configured duration."""
        before = utcnow()
        for _ in range(5):
            policy.record_failure(user)

        current = store.get_user(user.id)
        assert current.failed_login_attempts == 5
        assert current.locked_until is not None
        window = current.locked_until - before
        assert timedelta(minutes=14) < window <= timedelta(minutes=15, seconds=5)


class TestEnsureNotLocked:
    def test_locked_account_raises_with_minutes(self, policy, store, user):
        """A locked account raises AccountLockedError with remaining minutes."""
        for _ in range(5):
            policy.record_failure(user)
        locked = store.get_user(user.id)

        with pytest.raises(AccountLockedError) as excinfo:
            policy.ensure_not_locked(locked)

        assert excinfo.value.retry_after_minutes == 15
        assert excinfo.value.status_code == 403
        assert "15 minute" in excinfo.value.message

    def test_expired_lock_is_open(self, policy, store, user):
        """Once locked_until has passed the account is open without a write."""
        store._update_user(
            user.id, failed_login_attempts=5, locked_until=utcnow() - timedelta(seconds=1)
        )

        policy.ensure_not_locked(store.get_user(user.id))

    def test_remaining_minutes_rounds_up(self, policy, store, user):
        """Partial minutes count as a whole minute."""
        store._update_user(user.id, locked_until=utcnow() + timedelta(seconds=61))

        assert LockoutPolicy.remaining_minutes(store.get_user(user.id)) == 2


class TestRecordSuccess:
    def test_success_resets_counter_and_lock(self, policy, store, user):
        """A successful login clears the counter and the lock timestamp."""
        for _ in range(3):
            policy.record_failure(user)

        policy.record_success(store.get_user(user.id))

        current = store.get_user(user.id)
        assert current.failed_login_attempts == 0
        assert current.locked_until is None
