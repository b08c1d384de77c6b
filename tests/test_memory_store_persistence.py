from datetime import timedelta

import pytest

from rayauth.storage.errors import ConstraintViolation
from rayauth.storage.memory import MemoryStore
from rayauth.storage.models import Session, Tenant, utcnow


def test_memory_store_persists_users_tenants_and_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    tenant = store.create_tenant(Tenant.new("SHOP-1", "Shop", features={"pos": True}))
    user = store.create_user(
        "persist@example.com", "persist1", tenant_id=tenant.id, role="MANAGER", password_hash="h"
    )
    store.increment_failed_login(user.id, 5, timedelta(minutes=15))
    session = store.create_session(Session.new(user.id, tenant.id, "hash-1"))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "MANAGER"
    assert reloaded_user.failed_login_attempts == 1
    assert reloaded.get_tenant_by_code("SHOP-1").features == {"pos": True}
    reloaded_session = reloaded.get_session(session.id)
    assert reloaded_session.expires_at == session.expires_at
    assert reloaded_session.expires_at.tzinfo is not None


def test_duplicate_email_and_tenant_code_raise(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", "dup", tenant_id="t1", role="VENDEUR")
    store.create_tenant(Tenant.new("DUP", "Dup"))

    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com", "dup2", tenant_id="t1", role="VENDEUR")
    with pytest.raises(ConstraintViolation):
        store.create_tenant(Tenant.new("DUP", "Other"))


def test_session_for_unknown_user_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("ghost", "t1", "hash"))


def test_deactivate_expired_sessions_counts_only_expired(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("s@example.com", "s", tenant_id="t1", role="VENDEUR")
    live = store.create_session(Session.new(user.id, "t1", "live"))
    dead = store.create_session(Session.new(user.id, "t1", "dead"))
    store.sessions[dead.id].expires_at = utcnow() - timedelta(seconds=5)

    assert store.deactivate_expired_sessions() == 1
    assert store.get_session(live.id).is_active
    assert store.session_stats() == {"total_active": 1, "total_expired": 1, "unique_users": 1}


def test_consume_password_reset_token_is_single_use(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("r@example.com", "r", tenant_id="t1", role="VENDEUR")
    expires = utcnow() + timedelta(hours=1)
    store.set_password_reset_token(user.id, "ticket-hash", expires)

    consumed = store.consume_password_reset_token("ticket-hash")

    assert consumed.id == user.id
    assert consumed.password_reset_expires == expires
    assert store.consume_password_reset_token("ticket-hash") is None
    assert store.get_user(user.id).password_reset_token is None
