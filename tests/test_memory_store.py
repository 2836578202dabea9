"""Tests for MemoryStore tables and snapshot persistence."""

from datetime import timedelta

import pytest

from validauth.storage.errors import ConstraintViolation
from validauth.storage.memory import MemoryStore
from validauth.storage.models import Identity, utcnow


def test_identity_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.ensure_role("ROLE_USER")
    identity = store.save(Identity.new("alice", "Alice@X.com", "hash", "ROLE_USER"))
    now = utcnow()
    store.increment_failed_attempts(identity.id, 1, now)
    token = store.replace_refresh_token(identity.id, "tok", now + timedelta(days=1))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    loaded = reloaded.find_by_email("alice@x.com")
    assert loaded.id == identity.id
    assert loaded.email == "alice@x.com"
    assert loaded.locked is True
    assert loaded.locked_at == now
    assert reloaded.find_role_by_name("ROLE_USER") is not None
    assert reloaded.find_refresh_token("tok").expiry_date == token.expiry_date


def test_persist_disabled_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "off"), persist=False)
    store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    assert not (tmp_path / "off").exists()


def test_returned_records_are_copies(memory_store):
    saved = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    saved.active = True
    assert memory_store.find_by_id(saved.id).active is False


def test_unique_username_and_email(memory_store):
    memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    with pytest.raises(ConstraintViolation) as exc:
        memory_store.save(Identity.new("alice", "b@x.com", "hash", "ROLE_USER"))
    assert exc.value.detail == {"field": "username"}
    with pytest.raises(ConstraintViolation) as exc:
        memory_store.save(Identity.new("bob", "A@X.COM", "hash", "ROLE_USER"))
    assert exc.value.detail == {"field": "email"}


def test_save_updates_existing_identity(memory_store):
    identity = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    identity.active = True
    memory_store.save(identity)
    assert memory_store.find_by_username("alice").active is True


def test_ensure_role_is_idempotent(memory_store):
    first = memory_store.ensure_role("ROLE_ADMIN")
    second = memory_store.ensure_role("ROLE_ADMIN")
    assert first.id == second.id


def test_increment_keeps_original_lock_time(memory_store):
    identity = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    first = utcnow()
    memory_store.increment_failed_attempts(identity.id, 1, first)
    later = memory_store.increment_failed_attempts(identity.id, 1, first + timedelta(minutes=5))
    assert later.failed_attempts == 2
    assert later.locked_at == first


def test_increment_unknown_identity(memory_store):
    assert memory_store.increment_failed_attempts("missing", 5, utcnow()) is None
    assert memory_store.reset_failed_attempts("missing") is None


def test_replace_checks_owner_of_replaced_token(memory_store):
    alice = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    bob = memory_store.save(Identity.new("bob", "b@x.com", "hash", "ROLE_USER"))
    expiry = utcnow() + timedelta(days=1)
    memory_store.replace_refresh_token(alice.id, "alice-token", expiry)

    assert (
        memory_store.replace_refresh_token(bob.id, "x", expiry, replacing="alice-token")
        is None
    )
    assert memory_store.find_refresh_token("alice-token") is not None


def test_mark_active_succeeds_once(memory_store):
    identity = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))

    activated = memory_store.mark_active(identity.id)

    assert activated.active is True
    assert memory_store.mark_active(identity.id) is None
    assert memory_store.mark_active("missing") is None


def test_set_enabled_leaves_lockout_counters(memory_store):
    identity = memory_store.save(Identity.new("alice", "a@x.com", "hash", "ROLE_USER"))
    memory_store.increment_failed_attempts(identity.id, 5, utcnow())

    updated = memory_store.set_enabled(identity.id, False)

    assert updated.enabled is False
    assert updated.failed_attempts == 1
    assert memory_store.find_by_id(identity.id).enabled is False
    assert memory_store.set_enabled("missing", True) is None
