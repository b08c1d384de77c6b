"""Unit tests for the session registry.

Tests for:
- Device labelling from the user agent
- Per-user session cap and oldest-first eviction
- Refresh token validation, lazy expiry and rotation
- Revocation and the expiry sweep
"""

import threading
from datetime import timedelta

import pytest

from rayauth.service.sessions import RequestMeta, SessionRegistry, parse_device_info
from rayauth.service.tokens import hash_token
from rayauth.storage.memory import MemoryStore
from rayauth.storage.models import utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def registry(store):
    return SessionRegistry(store, max_sessions=5, ttl_days=7)


@pytest.fixture
def user(store):
    return store.create_user("s@x.com", "s1", tenant_id="t1", role="VENDEUR", password_hash="x")


class TestDeviceInfo:
    @pytest.mark.parametrize(
        "agent,label",
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "Mobile"),
            ("Mozilla/5.0 (Linux; Android 13; Tablet)", "Tablet"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows Desktop"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac Desktop"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux Desktop"),
            ("PostmanRuntime/7.36.0", "Postman"),
            ("curl/8.4.0", "Desktop"),
        ],
    )
    def test_known_agents(self, agent, label):
        """User agents map to the first matching device label."""
        assert parse_device_info(agent) == label

    def test_missing_agent(self):
        """No user agent yields the unknown label."""
        assert parse_device_info(None) == "Unknown device"


class TestCreateSession:
    def test_session_stores_only_token_hash(self, registry, store, user):
        """The raw refresh token is never persisted."""
        session = registry.create_session(
            user.id, user.tenant_id, "raw-token", RequestMeta("10.0.0.1", "PostmanRuntime/7")
        )

        stored = store.get_session(session.id)
        assert stored.refresh_token_hash == hash_token("raw-token")
        assert stored.refresh_token_hash != "raw-token"
        assert stored.device_info == "Postman"
        assert stored.ip_address == "10.0.0.1"
        assert stored.is_active

    def test_expiry_is_ttl_days_ahead(self, registry, user):
        """Sessions expire session_ttl_days after creation."""
        session = registry.create_session(user.id, user.tenant_id, "raw")

        assert session.expires_at - session.created_at == timedelta(days=7)

    def test_cap_evicts_oldest(self, registry, store, user):
        """A sixth session deactivates exactly the oldest one."""
        created = [
            registry.create_session(user.id, user.tenant_id, f"token-{i}") for i in range(5)
        ]

        newest = registry.create_session(user.id, user.tenant_id, "token-5")

        active = store.list_active_sessions(user.id)
        assert len(active) == 5
        assert created[0].id not in {s.id for s in active}
        assert newest.id in {s.id for s in active}
        assert store.get_session(created[0].id).is_active is False

    def test_cap_holds_under_concurrency(self, registry, store, user):
        """Concurrent creations for one user never exceed the cap."""
        threads = [
            threading.Thread(
                target=registry.create_session, args=(user.id, user.tenant_id, f"c-{i}")
            )
            for i in range(12)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.list_active_sessions(user.id)) == 5

    def test_cap_is_per_user(self, registry, store, user):
        """Another user's sessions do not count toward the cap."""
        other = store.create_user("o@x.com", "o1", tenant_id="t1", role="VENDEUR")
        for i in range(5):
            registry.create_session(user.id, user.tenant_id, f"u-{i}")
        registry.create_session(other.id, other.tenant_id, "o-0")

        assert len(store.list_active_sessions(user.id)) == 5
        assert len(store.list_active_sessions(other.id)) == 1


class TestValidateAndRotate:
    def test_validate_matches_current_hash(self, registry, user):
        """The current refresh token resolves to its session."""
        session = registry.create_session(user.id, user.tenant_id, "current")

        found = registry.validate_refresh_token(user.id, "current")

        assert found.id == session.id

    def test_rotation_invalidates_previous_token(self, registry, user):
        """After rotation only the new token validates."""
        session = registry.create_session(user.id, user.tenant_id, "old")

        registry.rotate_refresh_token(session.id, "new")

        assert registry.validate_refresh_token(user.id, "old") is None
        assert registry.validate_refresh_token(user.id, "new").id == session.id

    def test_expired_session_is_deactivated_on_use(self, registry, store, user):
        """An expired match validates as None and is deactivated."""
        session = registry.create_session(user.id, user.tenant_id, "stale")
        store.sessions[session.id].expires_at = utcnow() - timedelta(seconds=1)

        assert registry.validate_refresh_token(user.id, "stale") is None
        assert store.get_session(session.id).is_active is False

    def test_other_users_token_does_not_match(self, registry, store, user):
        """A token is only valid for the user that owns the session."""
        other = store.create_user("o@x.com", "o1", tenant_id="t1", role="VENDEUR")
        registry.create_session(user.id, user.tenant_id, "mine")

        assert registry.validate_refresh_token(other.id, "mine") is None


class TestRevocation:
    def test_revoke_requires_ownership(self, registry, store, user):
        """Revoking another user's session reports not found and changes nothing."""
        other = store.create_user("o@x.com", "o1", tenant_id="t1", role="VENDEUR")
        session = registry.create_session(user.id, user.tenant_id, "t")

        assert registry.revoke_session(session.id, other.id) is False
        assert store.get_session(session.id).is_active is True
        assert registry.revoke_session(session.id, user.id) is True
        assert store.get_session(session.id).is_active is False

    def test_revoke_unknown_session(self, registry, user):
        """Unknown ids report False."""
        assert registry.revoke_session("missing", user.id) is False

    def test_revoke_all_and_others(self, registry, store, user):
        """revoke_other_sessions keeps one; revoke_all_sessions clears the rest."""
        keep = registry.create_session(user.id, user.tenant_id, "a")
        registry.create_session(user.id, user.tenant_id, "b")
        registry.create_session(user.id, user.tenant_id, "c")

        assert registry.revoke_other_sessions(user.id, keep.id) == 2
        assert [s.id for s in store.list_active_sessions(user.id)] == [keep.id]
        assert registry.revoke_all_sessions(user.id) == 1
        assert store.list_active_sessions(user.id) == []

    def test_get_user_sessions_hides_token_hash(self, registry, user):
        """Session listings expose no secret material."""
        registry.create_session(user.id, user.tenant_id, "a", RequestMeta("1.2.3.4", "curl/8"))

        infos = registry.get_user_sessions(user.id)

        assert len(infos) == 1
        assert not hasattr(infos[0], "refresh_token_hash")
        assert infos[0].ip_address == "1.2.3.4"


class TestSweepAndStats:
    def test_cleanup_deactivates_expired(self, registry, store, user):
        """The sweep deactivates every active session past its expiry."""
        live = registry.create_session(user.id, user.tenant_id, "live")
        dead = registry.create_session(user.id, user.tenant_id, "dead")
        store.sessions[dead.id].expires_at = utcnow() - timedelta(minutes=1)

        assert registry.cleanup_expired_sessions() == 1
        assert store.get_session(dead.id).is_active is False
        assert store.get_session(live.id).is_active is True
        assert registry.cleanup_expired_sessions() == 0

    def test_stats(self, registry, store, user):
        """Stats count active sessions, deactivated rows and distinct users."""
        other = store.create_user("o@x.com", "o1", tenant_id="t1", role="VENDEUR")
        registry.create_session(user.id, user.tenant_id, "a")
        registry.create_session(other.id, other.tenant_id, "b")
        dead = registry.create_session(user.id, user.tenant_id, "c")
        store.sessions[dead.id].expires_at = utcnow() - timedelta(minutes=1)
        registry.cleanup_expired_sessions()

        stats = registry.get_session_stats()

        assert stats == {"total_active": 2, "total_expired": 1, "unique_users": 2}

    def test_stats_count_revoked_sessions(self, registry, user):
        """A session revoked before its expiry counts as no longer active."""
        registry.create_session(user.id, user.tenant_id, "keep")
        gone = registry.create_session(user.id, user.tenant_id, "gone")

        registry.revoke_session(gone.id, user.id)

        stats = registry.get_session_stats()
        assert stats == {"total_active": 1, "total_expired": 1, "unique_users": 1}
