"""Tests for the sync coordinator: debounce, in-flight guard, lifecycle, errors."""

import asyncio
import signal

import pytest

from tccsync.bidirectional.sync_engine import SyncResult
from tccsync.config.models import BACKEND_CLOUDFLARE, BACKEND_NONE, CloudflareConfig
from tccsync.core.models import AppData
from tccsync.errors import ConfigurationError, ConflictError, NetworkError


async def test_no_backend_skips_and_ignores_changes(coordinator_factory, store):
    coordinator = coordinator_factory(store, None)
    assert coordinator.detect_backend() == BACKEND_NONE

    store.tasks.add({"title": "offline only"})
    coordinator.mark_changed()

    assert coordinator.pending_changes is False
    assert coordinator._debounce_task is None

    report = await coordinator.sync_now()
    assert report.result == SyncResult.SKIPPED
    assert coordinator.last_synced_at is None


async def test_successful_sync_updates_state(coordinator, store, fake_backend):
    store.tasks.add({"title": "a"})
    assert coordinator.pending_changes is True

    report = await coordinator.sync_now()

    assert report.result == SyncResult.PUSHED
    assert coordinator.pending_changes is False
    assert coordinator.error is None
    assert coordinator.last_synced_at is not None
    assert coordinator.get_stats()['pushed'] == 1


async def test_burst_of_changes_coalesces_into_one_sync(coordinator_factory, store, fake_backend):
    coordinator = coordinator_factory(store, fake_backend, debounce_ms=50)

    for i in range(5):
        store.tasks.add({"title": f"task {i}"})
        await asyncio.sleep(0.01)

    assert fake_backend.timestamp_reads == 0

    await asyncio.sleep(0.3)

    assert coordinator.stats['syncs_started'] == 1
    assert fake_backend.writes == 1
    assert len(fake_backend.snapshot.tasks) == 5
    assert coordinator.pending_changes is False


async def test_second_sync_while_in_flight_is_skipped(coordinator, store, fake_backend):
    store.tasks.add({})
    fake_backend.gate = asyncio.Event()

    first = asyncio.create_task(coordinator.sync_now())
    await asyncio.sleep(0)
    assert coordinator.syncing is True

    second = await coordinator.sync_now()

    assert second.result == SyncResult.SKIPPED
    assert fake_backend.timestamp_reads == 1
    assert coordinator.pending_changes is True

    fake_backend.gate.set()
    assert (await first).result == SyncResult.PUSHED
    assert coordinator.syncing is False


async def test_error_keeps_pending_changes(coordinator, store, fake_backend):
    store.tasks.add({})
    fake_backend.fail_with = NetworkError("timeout")

    report = await coordinator.sync_now()

    assert report.result == SyncResult.ERROR
    assert "timeout" in report.message
    assert coordinator.pending_changes is True
    assert coordinator.error is not None

    fake_backend.fail_with = None
    report = await coordinator.sync_now()

    assert report.result == SyncResult.PUSHED
    assert coordinator.pending_changes is False
    assert coordinator.error is None


async def test_configuration_error_is_skipped(coordinator, store, fake_backend):
    store.tasks.add({})
    fake_backend.fail_with = ConfigurationError("github rejected credentials", status=401)

    report = await coordinator.sync_now()

    assert report.result == SyncResult.SKIPPED
    assert coordinator.pending_changes is True
    assert coordinator.error is None


async def test_open_conflict_blocks_sync(coordinator, store, fake_backend):
    store.tasks.add({"id": "base"})
    await coordinator.sync_now()
    fake_backend.seed(AppData.from_payload({"schemaVersion": 2, "tasks": [{"id": "other"}]}))
    store.tasks.add({"id": "mine"})

    report = await coordinator.sync_now()
    assert report.result == SyncResult.CONFLICT
    assert coordinator.conflict is not None

    reads = fake_backend.timestamp_reads
    before = store.snapshot()

    again = await coordinator.sync_now()

    assert again.result == SyncResult.CONFLICT
    assert again.conflict is coordinator.conflict
    assert fake_backend.timestamp_reads == reads
    assert store.snapshot() == before


async def test_resolve_without_conflict_raises(coordinator):
    with pytest.raises(ConflictError):
        await coordinator.resolve_conflict("local")


async def test_resolve_unknown_choice(coordinator):
    with pytest.raises(ValueError):
        await coordinator.resolve_conflict("merge")


async def test_resolve_local_through_coordinator(coordinator, store, fake_backend):
    store.tasks.add({"id": "base"})
    await coordinator.sync_now()
    fake_backend.seed(AppData.from_payload({"schemaVersion": 2, "tasks": [{"id": "other"}]}))
    store.tasks.add({"id": "mine"})
    await coordinator.sync_now()

    report = await coordinator.resolve_conflict("local")

    assert report.result == SyncResult.PUSHED
    assert coordinator.conflict is None
    assert (await coordinator.sync_now()).result == SyncResult.UP_TO_DATE


async def test_page_hidden_flushes_pending_changes(coordinator, store, fake_backend):
    store.tasks.add({})
    assert coordinator._debounce_task is not None

    task = coordinator.on_page_hidden()
    assert task is not None
    report = await task

    assert report.result == SyncResult.PUSHED
    assert fake_backend.writes == 1


async def test_flush_without_pending_changes_is_noop(coordinator):
    assert coordinator.on_before_unload() is None


async def test_shutdown_cancels_debounce(coordinator_factory, store, fake_backend):
    coordinator = coordinator_factory(store, fake_backend, debounce_ms=50)
    store.tasks.add({})

    await coordinator.shutdown()
    await asyncio.sleep(0.15)

    assert fake_backend.timestamp_reads == 0
    assert fake_backend.closed is False  # backend never created


async def test_signal_handlers_installed(coordinator):
    loop = asyncio.get_running_loop()
    coordinator.install_signal_handlers(loop)
    try:
        assert loop.remove_signal_handler(signal.SIGTERM) is True
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def test_reload_config_detects_new_backend(coordinator_factory, store, fake_backend):
    coordinator = coordinator_factory(store, fake_backend)
    coordinator.context.config.cloudflare = None
    assert coordinator.detect_backend() == BACKEND_NONE

    coordinator.context.parser.save_cloudflare(CloudflareConfig(api_url="http://sync.test"))

    assert await coordinator.reload_config() == BACKEND_CLOUDFLARE
    store.tasks.add({})
    assert coordinator.pending_changes is True


async def test_resolve_while_resolution_in_flight_is_skipped(coordinator, store, fake_backend):
    store.tasks.add({"id": "base"})
    await coordinator.sync_now()
    fake_backend.seed(AppData.from_payload({"schemaVersion": 2, "tasks": [{"id": "other"}]}))
    store.tasks.add({"id": "mine"})
    await coordinator.sync_now()
    attempts = fake_backend.write_attempts
    fake_backend.write_gate = asyncio.Event()

    first = asyncio.create_task(coordinator.resolve_conflict("local"))
    await asyncio.sleep(0)
    assert coordinator.syncing is True

    second = await coordinator.resolve_conflict("remote")

    assert second.result == SyncResult.SKIPPED
    assert fake_backend.write_attempts == attempts + 1
    assert coordinator.conflict is not None

    fake_backend.write_gate.set()
    assert (await first).result == SyncResult.PUSHED
    assert coordinator.conflict is None
    assert {t.id for t in store.tasks.get()} == {"base", "mine"}


async def test_edit_during_pull_counts_as_skipped(coordinator, store, fake_backend):
    fake_backend.seed(AppData.from_payload({"schemaVersion": 2, "tasks": [{"id": "remote"}]}))
    fake_backend.snapshot_gate = asyncio.Event()

    running = asyncio.create_task(coordinator.sync_now())
    while fake_backend.snapshot_reads == 0:
        await asyncio.sleep(0)
    store.tasks.add({"id": "mine"})
    fake_backend.snapshot_gate.set()

    report = await running

    assert report.result == SyncResult.SKIPPED
    assert coordinator.last_synced_at is None
    assert coordinator.stats['syncs_completed'] == 0
    assert coordinator.stats['syncs_skipped'] == 1
    assert coordinator.pending_changes is True
    assert store.tasks.get_by_id("mine") is not None
