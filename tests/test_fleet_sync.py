"""
Tests for the fleet-wide sync coordinator.
"""
import asyncio

import pytest
from unittest.mock import patch

from app.models import AccessKey
from app.services.fleet_sync import FleetLock, run_fleet_sync
from app.services.sync_lock import SyncAlreadyRunningError, acquire_lock, get_lock_status


def test_failing_server_does_not_block_others(db_session, session_factory, make_server, make_key, fleet):
    healthy, healthy_remote = make_server("healthy")
    broken, broken_remote = make_server("broken")
    key = make_key(healthy, healthy_remote)
    healthy_remote.counters[key.remote_key_id] = 4_096
    broken_remote.fail_all = True

    result = asyncio.run(run_fleet_sync(session_factory, fleet))

    by_name = {r.server_name: r for r in result.results}
    assert set(by_name) == {"healthy", "broken"}
    assert by_name["healthy"].success is True
    assert by_name["broken"].success is False
    assert "Simulated failure" in by_name["broken"].error
    assert result.succeeded == 1
    assert result.failed == 1

    db_session.expire_all()
    assert db_session.query(AccessKey).filter(AccessKey.id == key.id).one().used_bytes == 4_096


def test_unreachable_server_reported_as_failed(session_factory, make_server, fleet):
    server, _ = make_server("gone")
    del fleet.remotes[server.api_url]

    result = asyncio.run(run_fleet_sync(session_factory, fleet))

    assert len(result.results) == 1
    assert result.results[0].success is False


def test_inactive_servers_are_skipped(session_factory, make_server, fleet):
    make_server("on")
    make_server("off", is_active=False)

    result = asyncio.run(run_fleet_sync(session_factory, fleet))

    assert [r.server_name for r in result.results] == ["on"]


def test_lock_released_after_run(db_session, session_factory, make_server, fleet):
    make_server()

    asyncio.run(run_fleet_sync(session_factory, fleet))

    assert get_lock_status(db_session).is_locked is False


def test_lock_held_raises(db_session, session_factory, make_server, fleet):
    make_server()
    acquire_lock(db_session)

    with pytest.raises(SyncAlreadyRunningError) as exc_info:
        asyncio.run(run_fleet_sync(session_factory, fleet))

    assert exc_info.value.retry_after_seconds >= 1


def test_concurrent_runs_are_exclusive(session_factory, make_server, fleet):
    """Two overlapping fleet syncs: one completes, the other is rejected."""
    _, remote = make_server()
    remote.delay = 0.2

    async def both():
        return await asyncio.gather(
            run_fleet_sync(session_factory, fleet),
            run_fleet_sync(session_factory, fleet),
            return_exceptions=True,
        )

    outcomes = asyncio.run(both())

    conflicts = [o for o in outcomes if isinstance(o, SyncAlreadyRunningError)]
    completed = [o for o in outcomes if not isinstance(o, BaseException)]
    assert len(conflicts) == 1
    assert len(completed) == 1
    assert completed[0].results[0].success is True


def test_fleet_lock_releases_on_error(db_session, session_factory):
    async def failing():
        async with FleetLock(session_factory):
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(failing())

    assert get_lock_status(db_session).is_locked is False


def test_lock_stays_live_during_slow_pass(session_factory, make_server, fleet):
    """A pass longer than the lock max age keeps the lock through heartbeats."""
    _, remote = make_server()
    remote.delay = 0.8

    async def overlapping():
        first = asyncio.create_task(run_fleet_sync(session_factory, fleet))
        await asyncio.sleep(1.3)
        with pytest.raises(SyncAlreadyRunningError):
            await run_fleet_sync(session_factory, fleet)
        return await first

    with patch("app.core.config.settings.SYNC_LOCK_MAX_AGE_SECONDS", 1):
        result = asyncio.run(overlapping())

    assert result.succeeded == 1
