"""
Tests for the per-server reconciliation pass.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.models import AccessKey, ArchivedKey, ArchiveReason, ExpirationType, KeyStatus, TrafficLog
from app.models.connection_session import ConnectionSession
from app.services.server_sync_service import sync_server
from app.utils.time_utils import as_utc

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _reload(db, key_id):
    db.expire_all()
    return db.query(AccessKey).filter(AccessKey.id == key_id).first()


def test_one_gib_limit_depletes_and_archives(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, data_limit_bytes=1_073_741_824, used_bytes=900_000_000)
    key_id, remote_id = key.id, key.remote_key_id
    remote.counters[remote_id] = 1_200_000_000

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.success is True
    assert result.transitions == {"DEPLETED": 1}
    assert result.archived == 1
    assert _reload(db_session, key_id) is None
    archived = db_session.query(ArchivedKey).filter(ArchivedKey.original_key_id == key_id).one()
    assert archived.archive_reason == ArchiveReason.DEPLETED
    assert archived.used_bytes == 1_200_000_000
    assert archived.server_name == server.name
    assert as_utc(archived.delete_after) == NOW + timedelta(days=90)
    assert remote_id not in remote.keys


def test_first_use_starts_thirty_day_expiry(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(
        server, remote,
        status=KeyStatus.PENDING,
        expiration_type=ExpirationType.START_ON_FIRST_USE,
        duration_days=30,
    )
    remote.counters[key.remote_key_id] = 2_048

    sync_server(db_session, server, fleet(server), now=NOW)

    key = _reload(db_session, key.id)
    assert key.status == KeyStatus.ACTIVE
    assert as_utc(key.first_used_at) == NOW
    assert as_utc(key.expires_at) == NOW + timedelta(days=30)
    assert key.used_bytes == 2_048


def test_pass_is_idempotent(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote)
    remote.counters[key.remote_key_id] = 500_000

    sync_server(db_session, server, fleet(server), now=NOW)
    first = _reload(db_session, key.id)
    first_state = (first.used_bytes, first.usage_offset, first.status)
    logs_after_first = db_session.query(TrafficLog).count()

    sync_server(db_session, server, fleet(server), now=NOW)
    second = _reload(db_session, key.id)

    assert (second.used_bytes, second.usage_offset, second.status) == first_state
    assert db_session.query(TrafficLog).count() == logs_after_first


def test_used_bytes_monotonic_without_reset(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote)
    remote.counters[key.remote_key_id] = 10_000
    sync_server(db_session, server, fleet(server), now=NOW)

    remote.counters[key.remote_key_id] = 4_000
    result = sync_server(db_session, server, fleet(server), now=NOW + timedelta(minutes=1))

    key = _reload(db_session, key.id)
    assert result.counter_resets == 0
    assert key.used_bytes == 10_000

    remote.counters[key.remote_key_id] = 5_000
    sync_server(db_session, server, fleet(server), now=NOW + timedelta(minutes=2))
    assert _reload(db_session, key.id).used_bytes == 11_000


def test_traffic_log_only_for_large_deltas(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    small = make_key(server, remote, name="small")
    large = make_key(server, remote, name="large")
    remote.counters[small.remote_key_id] = 50 * 1024
    remote.counters[large.remote_key_id] = 200 * 1024

    sync_server(db_session, server, fleet(server), now=NOW)

    logs = db_session.query(TrafficLog).all()
    assert [(log.access_key_id, log.bytes_used) for log in logs] == [(large.id, 200 * 1024)]


def test_remote_failure_rolls_back_and_reports(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=100)
    remote.counters[key.remote_key_id] = 9_999
    remote.fail_on.add("get_metrics")

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.success is False
    assert "get_metrics" in result.error
    assert _reload(db_session, key.id).used_bytes == 100


def test_commit_failure_rolls_back_pass(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=100)
    remote.counters[key.remote_key_id] = 9_999

    with patch.object(db_session, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk full"))):
        result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.success is False
    assert result.error.startswith("Database error")
    assert _reload(db_session, key.id).used_bytes == 100


def test_disabled_keys_are_not_reconciled(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, status=KeyStatus.DISABLED, used_bytes=300, data_limit_bytes=100)
    remote.counters[key.remote_key_id] = 50_000

    result = sync_server(db_session, server, fleet(server), now=NOW)

    key = _reload(db_session, key.id)
    assert result.keys_synced == 0
    assert key.status == KeyStatus.DISABLED
    assert key.used_bytes == 300


def test_missing_remote_key_keeps_usage_but_still_expires(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(
        server, remote,
        used_bytes=777,
        expiration_type=ExpirationType.FIXED_DATE,
        expires_at=NOW - timedelta(hours=1),
    )
    del remote.keys[key.remote_key_id]
    del remote.counters[key.remote_key_id]
    key_id = key.id

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.missing_remote_keys == 1
    archived = db_session.query(ArchivedKey).filter(ArchivedKey.original_key_id == key_id).one()
    assert archived.archive_reason == ArchiveReason.EXPIRED
    assert archived.used_bytes == 777


def test_server_without_metrics_still_evaluates_expiry(db_session, make_server, make_key, fleet):
    server, remote = make_server(metrics_enabled=False)
    live = make_key(server, remote, name="live", used_bytes=10)
    expired = make_key(
        server, remote,
        name="old",
        expiration_type=ExpirationType.FIXED_DATE,
        expires_at=NOW - timedelta(days=1),
    )
    remote.counters[live.remote_key_id] = 99_999

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.success is True
    assert result.metrics_available is False
    assert _reload(db_session, live.id).used_bytes == 10
    assert _reload(db_session, expired.id) is None
    db_session.refresh(server)
    assert server.metrics_enabled is False


def test_archive_continues_when_remote_delete_fails(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, data_limit_bytes=1_000)
    key_id = key.id
    remote.counters[key.remote_key_id] = 5_000
    remote.fail_on.add("delete_key")

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.success is True
    assert result.archived == 1
    assert _reload(db_session, key_id) is None
    assert db_session.query(ArchivedKey).filter(ArchivedKey.original_key_id == key_id).count() == 1


def test_sync_stamps_last_sync_at(db_session, make_server, fleet):
    server, remote = make_server()

    sync_server(db_session, server, fleet(server), now=NOW)

    db_session.refresh(server)
    assert as_utc(server.last_sync_at) == NOW


def test_counter_reset_counts_fresh_traffic(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    key = make_key(server, remote, used_bytes=4_000, usage_offset=500_000)
    remote.counters[key.remote_key_id] = 150_000

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.counter_resets == 1
    key = _reload(db_session, key.id)
    assert key.used_bytes == 150_000
    assert key.usage_offset == 0
    assert as_utc(key.last_used_at) == NOW
    assert key.estimated_devices == 1
    logs = db_session.query(TrafficLog).filter(TrafficLog.access_key_id == key.id).all()
    assert [log.bytes_used for log in logs] == [150_000]
    session = db_session.query(ConnectionSession).filter(ConnectionSession.access_key_id == key.id).one()
    assert session.bytes_used == 150_000


def test_discovery_imports_keys_created_elsewhere(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    make_key(server, remote, name="managed")
    outside = remote.add_key("made-elsewhere")
    outside.data_limit_bytes = 50_000
    remote.counters[outside.id] = 7_000

    result = sync_server(db_session, server, fleet(server), now=NOW, discover=True)

    assert result.success is True
    assert result.discovered_keys == 1
    imported = db_session.query(AccessKey).filter(AccessKey.remote_key_id == outside.id).one()
    assert imported.name == "made-elsewhere"
    assert imported.status == KeyStatus.ACTIVE
    assert imported.used_bytes == 7_000
    assert imported.usage_offset == 0
    assert imported.data_limit_bytes == 50_000
    assert imported.access_url == outside.access_url
    assert server.remote_server_id == f"remote-{remote.name}"
    assert server.remote_version == "1.9.0"

    again = sync_server(db_session, server, fleet(server), now=NOW + timedelta(minutes=1), discover=True)

    assert again.discovered_keys == 0
    assert db_session.query(AccessKey).count() == 2


def test_unnamed_remote_key_gets_placeholder_name(db_session, make_server, fleet):
    server, remote = make_server()
    outside = remote.add_key("")

    sync_server(db_session, server, fleet(server), now=NOW, discover=True)

    assert db_session.query(AccessKey).one().name == f"Key {outside.id}"


def test_fleet_pass_does_not_discover(db_session, make_server, fleet):
    server, remote = make_server()
    remote.add_key("made-elsewhere")

    result = sync_server(db_session, server, fleet(server), now=NOW)

    assert result.discovered_keys == 0
    assert db_session.query(AccessKey).count() == 0
    assert server.remote_server_id is None


def test_discovery_skips_archived_keys_left_on_remote(db_session, make_server, make_key, fleet):
    server, remote = make_server()
    remote_id = make_key(server, remote, data_limit_bytes=100).remote_key_id
    remote.counters[remote_id] = 500
    remote.fail_on.add("delete_key")
    sync_server(db_session, server, fleet(server), now=NOW)
    assert remote_id in remote.keys

    result = sync_server(db_session, server, fleet(server), now=NOW + timedelta(minutes=1), discover=True)

    assert result.discovered_keys == 0
    assert db_session.query(AccessKey).count() == 0
