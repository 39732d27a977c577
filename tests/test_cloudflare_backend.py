"""Tests for the Cloudflare REST backend, served by the bundled sync server."""

import httpx
import pytest

from tccsync.backends import create_backend
from tccsync.backends.cloudflare import CloudflareBackend
from tccsync.bidirectional.conflict_resolver import ConflictResolver
from tccsync.bidirectional.coordinator import SyncContext, SyncCoordinator
from tccsync.bidirectional.sync_engine import SyncEngine, SyncResult
from tccsync.config.models import CloudflareConfig, TccSyncConfig
from tccsync.core.local_store import LocalStore
from tccsync.errors import ConfigurationError, ValidationError, VersionConflictError
from tccsync.web import create_app

API_URL = "http://testserver"


@pytest.fixture
def server(tmp_path):
    return create_app(str(tmp_path / "server" / "sync.db"), api_key="secret")


@pytest.fixture
async def make_backend(server):
    created = []

    def factory(api_key="secret"):
        backend = CloudflareBackend(
            CloudflareConfig(api_url=API_URL, api_key=api_key),
            transport=httpx.ASGITransport(app=server)
        )
        created.append(backend)
        return backend

    yield factory

    for backend in created:
        await backend.aclose()


@pytest.fixture
def second_store(tmp_path):
    path = tmp_path / "device-b"
    path.mkdir()
    return LocalStore(str(path))


def test_incomplete_config_rejected():
    with pytest.raises(ConfigurationError):
        CloudflareBackend(CloudflareConfig(api_url=""))


def test_factory_picks_cloudflare(store):
    config = TccSyncConfig(state_dir=str(store.state_dir), cloudflare=CloudflareConfig(api_url=API_URL))
    assert isinstance(create_backend(config), CloudflareBackend)


async def test_empty_server_has_no_timestamp(make_backend):
    backend = make_backend()
    await backend.prepare()
    assert await backend.read_remote_timestamp() is None


async def test_push_then_up_to_date(store, server, make_backend):
    task = store.tasks.add({"title": "cloud"})
    store.update_settings({"theme": "dark"})
    backend = make_backend()

    assert (await SyncEngine(store, backend).run()).result == SyncResult.PUSHED

    state = server.state.db.load_state()
    assert [t["id"] for t in state["data"]["tasks"]] == [task.id]
    assert state["data"]["userSettings"]["theme"] == "dark"
    assert store.watermark.isoformat() == state["lastSynced"]

    assert (await SyncEngine(store, backend).run()).result == SyncResult.UP_TO_DATE


async def test_second_device_pulls(store, second_store, make_backend):
    store.tasks.add({"title": "a"})
    store.memos.add({"title": "note"})
    await SyncEngine(store, make_backend()).run()

    report = await SyncEngine(second_store, make_backend()).run()

    assert report.result == SyncResult.PULLED
    assert second_store.snapshot().content_payload() == store.snapshot().content_payload()
    assert second_store.watermark == store.watermark


async def test_server_conflict_reported_and_resolved(store, second_store, server, make_backend):
    backend_a = make_backend()
    backend_b = make_backend()

    store.tasks.add({"id": "shared"})
    await SyncEngine(store, backend_a).run()
    await SyncEngine(second_store, backend_b).run()

    second_store.tasks.add({"id": "b-only"})
    assert (await SyncEngine(second_store, backend_b).run()).result == SyncResult.PUSHED
    store.tasks.add({"id": "a-only"})

    report = await SyncEngine(store, backend_a).run()

    assert report.result == SyncResult.CONFLICT
    assert {t.id for t in report.conflict.remote_snapshot.tasks} == {"shared", "b-only"}
    assert {t["id"] for t in server.state.db.list_records("tasks")} == {"shared", "b-only"}

    resolver = ConflictResolver(store)
    resolver.open(report.conflict)
    assert (await resolver.resolve("local", backend_a)).result == SyncResult.PUSHED

    assert {t["id"] for t in server.state.db.list_records("tasks")} == {"shared", "a-only"}
    assert (await SyncEngine(store, backend_a).run()).result == SyncResult.UP_TO_DATE


async def test_stale_write_is_version_conflict(store, make_backend):
    store.tasks.add({})
    backend = make_backend()
    await SyncEngine(store, backend).run()

    with pytest.raises(VersionConflictError):
        await backend.write_remote_snapshot(store.snapshot(), expected_version=None)


async def test_wrong_api_key_is_configuration_error(store, make_backend):
    store.tasks.add({})
    with pytest.raises(ConfigurationError):
        await SyncEngine(store, make_backend(api_key="wrong")).run()


async def test_rejected_credentials_skip_through_coordinator(store, server):
    config = TccSyncConfig(
        state_dir=str(store.state_dir),
        cloudflare=CloudflareConfig(api_url=API_URL, api_key="wrong"),
    )
    coordinator = SyncCoordinator(SyncContext(config, store, transport=httpx.ASGITransport(app=server)))
    try:
        store.tasks.add({})
        report = await coordinator.sync_now()
    finally:
        await coordinator.shutdown()

    assert report.result == SyncResult.SKIPPED
    assert coordinator.pending_changes is True



class EditOnPost(httpx.AsyncBaseTransport):
    """Runs a local edit while the POST is on the wire, then forwards it."""

    def __init__(self, inner, edit):
        self.inner = inner
        self.edit = edit

    async def handle_async_request(self, request):
        if request.method == "POST" and self.edit is not None:
            self.edit()
            self.edit = None
        return await self.inner.handle_async_request(request)


async def test_edit_during_post_reaches_server_next_round(store, server):
    transport = EditOnPost(httpx.ASGITransport(app=server), lambda: store.tasks.add({"id": "late"}))
    backend = CloudflareBackend(CloudflareConfig(api_url=API_URL, api_key="secret"), transport=transport)
    store.tasks.add({"id": "first"})

    try:
        assert (await SyncEngine(store, backend).run()).result == SyncResult.PUSHED
        assert {t["id"] for t in server.state.db.list_records("tasks")} == {"first"}

        assert (await SyncEngine(store, backend).run()).result == SyncResult.PUSHED
        assert {t["id"] for t in server.state.db.list_records("tasks")} == {"first", "late"}

        assert (await SyncEngine(store, backend).run()).result == SyncResult.UP_TO_DATE
    finally:
        await backend.aclose()

def test_unwrap_rejects_non_object_data():
    from tccsync.backends.cloudflare import _unwrap

    assert _unwrap({"success": True, "data": {"lastSynced": None, "data": {}}}) == {"lastSynced": None, "data": {}}
    with pytest.raises(ValidationError):
        _unwrap({"lastSynced": None, "data": []})
