"""
Tests for admin key operations.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.models import AccessKey, ArchivedKey, ArchiveReason, ExpirationType, KeyStatus
from app.models.connection_session import ConnectionSession
from app.schemas.access_key import KeyCreateRequest
from app.services.key_service import (
    KeyOperationError,
    bulk_operation,
    create_key,
    delete_key,
    disable_key,
    enable_key,
    key_stats,
    update_key,
)
from app.services.key_state_machine import InvalidTransitionError
from app.services.outline_client import OutlineApiError
from app.services.server_sync_service import sync_server
from app.utils.time_utils import as_utc

NOW = datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc)


def test_create_key_sets_remote_limit(db_session, make_server, fleet):
    server, remote = make_server()
    data = KeyCreateRequest(server_id=server.id, name="carol", data_limit_bytes=5_000_000)

    key = create_key(db_session, server, fleet(server), data, now=NOW)

    assert key.status == KeyStatus.ACTIVE
    assert key.remote_key_id in remote.keys
    assert remote.limits[key.remote_key_id] == 5_000_000
    assert key.access_url.startswith("ss://")


def test_create_first_use_key_is_pending(db_session, make_server, fleet):
    server, _ = make_server()
    data = KeyCreateRequest(
        server_id=server.id,
        name="dave",
        expiration_type=ExpirationType.START_ON_FIRST_USE,
        duration_days=30,
    )

    key = create_key(db_session, server, fleet(server), data, now=NOW)

    assert key.status == KeyStatus.PENDING
    assert key.expires_at is None


def test_create_discards_remote_key_when_limit_fails(db_session, make_server, fleet):
    server, remote = make_server()
    remote.fail_on.add("set_data_limit")
    data = KeyCreateRequest(server_id=server.id, name="erin", data_limit_bytes=1_000)

    with pytest.raises(KeyOperationError):
        create_key(db_session, server, fleet(server), data, now=NOW)

    assert remote.keys == {}
    assert db_session.query(AccessKey).count() == 0


def test_disable_deletes_remote_and_closes_sessions(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=1_000)
    old_remote_id = key.remote_key_id
    db_session.add(ConnectionSession(access_key_id=key.id, started_at=NOW, last_active_at=NOW, is_active=True))
    db_session.commit()

    disable_key(db_session, key, fleet(server), now=NOW)

    assert key.status == KeyStatus.DISABLED
    assert key.disabled_remote_key_id == old_remote_id
    assert as_utc(key.disabled_at) == NOW
    assert key.estimated_devices == 0
    assert old_remote_id not in remote.keys
    sessions = db_session.query(ConnectionSession).filter(ConnectionSession.access_key_id == key.id).all()
    assert all(not s.is_active for s in sessions)


def test_disable_remote_failure_leaves_key_unchanged(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote)
    remote.fail_on.add("delete_key")

    with pytest.raises(KeyOperationError):
        disable_key(db_session, key, fleet(server), now=NOW)

    db_session.expire_all()
    assert db_session.query(AccessKey).filter(AccessKey.id == key.id).one().status == KeyStatus.ACTIVE


def test_disable_twice_is_invalid(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, status=KeyStatus.DISABLED)

    with pytest.raises(InvalidTransitionError):
        disable_key(db_session, key, fleet(server), now=NOW)


def test_enable_continues_usage_with_negative_offset(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, data_limit_bytes=10_000, used_bytes=4_000)
    client = fleet(server)
    disable_key(db_session, key, client, now=NOW)

    enable_key(db_session, key, client, now=NOW + timedelta(hours=1))

    assert key.status == KeyStatus.ACTIVE
    assert key.usage_offset == -4_000
    assert key.used_bytes == 4_000
    assert key.disabled_at is None
    assert key.disabled_remote_key_id is None
    assert key.remote_key_id in remote.keys
    assert remote.limits[key.remote_key_id] == 6_000


def test_usage_continues_across_disable_and_enable(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=4_000)
    client = fleet(server)
    disable_key(db_session, key, client, now=NOW)
    enable_key(db_session, key, client, now=NOW + timedelta(hours=1))
    remote.counters[key.remote_key_id] = 1_500

    result = sync_server(db_session, server, client, now=NOW + timedelta(hours=2))

    assert result.success is True
    db_session.expire_all()
    assert db_session.query(AccessKey).filter(AccessKey.id == key.id).one().used_bytes == 5_500


def test_enable_unused_first_use_key_returns_to_pending(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(
        server, remote,
        status=KeyStatus.DISABLED,
        expiration_type=ExpirationType.START_ON_FIRST_USE,
        duration_days=7,
    )

    enable_key(db_session, key, fleet(server), now=NOW)

    assert key.status == KeyStatus.PENDING


def test_enable_limit_failure_discards_new_remote_key(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, status=KeyStatus.DISABLED, data_limit_bytes=10_000, used_bytes=10)
    remote.keys.clear()
    remote.fail_on.add("set_data_limit")

    with pytest.raises(KeyOperationError):
        enable_key(db_session, key, fleet(server), now=NOW)

    assert remote.keys == {}
    db_session.expire_all()
    assert db_session.query(AccessKey).filter(AccessKey.id == key.id).one().status == KeyStatus.DISABLED


def test_update_limit_accounts_for_offset(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, data_limit_bytes=1_000, usage_offset=-300, used_bytes=300)

    update_key(db_session, key, fleet(server), {"data_limit_bytes": 2_000})

    assert key.data_limit_bytes == 2_000
    assert remote.limits[key.remote_key_id] == 1_700


def test_update_remove_limit(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, data_limit_bytes=1_000)
    remote.limits[key.remote_key_id] = 1_000

    update_key(db_session, key, fleet(server), {"data_limit_bytes": None})

    assert key.data_limit_bytes is None
    assert key.remote_key_id not in remote.limits


def test_update_rename_and_metadata(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, name="old")

    update_key(db_session, key, fleet(server), {"name": "new", "email": "new@example.com"})

    assert key.name == "new"
    assert key.email == "new@example.com"
    assert remote.keys[key.remote_key_id].name == "new"


def test_update_remote_failure_changes_nothing(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, name="keep")
    remote.fail_on.add("rename_key")

    with pytest.raises(KeyOperationError):
        update_key(db_session, key, fleet(server), {"name": "changed", "notes": "x"})

    db_session.expire_all()
    stored = db_session.query(AccessKey).filter(AccessKey.id == key.id).one()
    assert stored.name == "keep"
    assert stored.notes is None


def test_switch_to_duration_from_creation(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    created = NOW - timedelta(days=2)
    key = make_key(server, remote, created_at=created)

    update_key(
        db_session, key, fleet(server),
        {"expiration_type": ExpirationType.DURATION_FROM_CREATION, "duration_days": 10},
    )

    assert as_utc(key.expires_at) == created + timedelta(days=10)


def test_delete_archives_with_deleted_reason(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=12_345)
    key_id, remote_id = key.id, key.remote_key_id

    archived = delete_key(db_session, key, fleet(server), now=NOW)

    assert archived.archive_reason == ArchiveReason.DELETED
    assert archived.original_status == KeyStatus.ACTIVE
    assert archived.used_bytes == 12_345
    assert remote_id not in remote.keys
    assert db_session.query(AccessKey).filter(AccessKey.id == key_id).first() is None
    assert db_session.query(ArchivedKey).count() == 1


def test_bulk_disable_isolates_failures(db_session, make_server, make_key, fleet):
    good_server, good_remote = make_server()
    bad_server, bad_remote = make_server()
    good = make_key(good_server, good_remote, name="good")
    bad = make_key(bad_server, bad_remote, name="bad")
    bad_remote.fail_on.add("delete_key")

    result = bulk_operation(db_session, [good.id, bad.id, 9999], fleet, disable_key)

    assert result.success == 1
    assert result.failed == 2
    assert {e["key_id"] for e in result.errors} == {bad.id, 9999}
    db_session.expire_all()
    assert db_session.query(AccessKey).filter(AccessKey.id == good.id).one().status == KeyStatus.DISABLED


def test_bulk_with_unreachable_server(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote)
    del fleet.remotes[server.api_url]

    result = bulk_operation(db_session, [key.id], fleet, disable_key)

    assert result.failed == 1
    assert "Failed to connect" in result.errors[0]["error"]


def test_key_stats_counts_by_status(db_session, make_server, make_key):
    server, remote = make_server()
    make_key(server, remote, name="a", used_bytes=100)
    make_key(server, remote, name="b", status=KeyStatus.DISABLED, used_bytes=50)
    make_key(server, remote, name="c", status=KeyStatus.PENDING)

    stats = key_stats(db_session)

    assert stats["total"] == 3
    assert stats["by_status"]["ACTIVE"] == 1
    assert stats["by_status"]["DISABLED"] == 1
    assert stats["by_status"]["PENDING"] == 1
    assert stats["total_used_bytes"] == 150


def test_outline_error_is_not_leaked_from_create(db_session, make_server, fleet):
    server, remote = make_server()
    remote.fail_on.add("create_key")

    with pytest.raises(KeyOperationError) as exc_info:
        create_key(db_session, server, fleet(server), KeyCreateRequest(server_id=server.id, name="x"), now=NOW)

    assert isinstance(exc_info.value.__cause__, OutlineApiError)


def test_delete_disabled_key_keeps_disabled_reason(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, status=KeyStatus.DISABLED)

    archived = delete_key(db_session, key, fleet(server), now=NOW)

    assert archived.archive_reason == ArchiveReason.DISABLED
    assert "delete_key" not in remote.calls
