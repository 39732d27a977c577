"""Pytest configuration and fixtures."""

import asyncio
import base64
import hashlib
import json
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest
import structlog

from tccsync.backends.base import SyncBackend
from tccsync.bidirectional.coordinator import SyncContext, SyncCoordinator
from tccsync.config.models import CloudflareConfig, SyncSettings, TccSyncConfig
from tccsync.config.parser import ConfigParser
from tccsync.core.clock import MonotonicClock
from tccsync.core.local_store import LocalStore
from tccsync.core.models import AppData
from tccsync.errors import ValidationError, VersionConflictError
from tccsync.utils.logger import close_log_file


class FakeBackend(SyncBackend):
    """In-memory backend with the same version check as the real adapters."""

    name = "fake"

    def __init__(self):
        self.snapshot: Optional[AppData] = None
        self.timestamp: Optional[datetime] = None
        self.clock = MonotonicClock()

        self.gate: Optional[asyncio.Event] = None
        self.snapshot_gate: Optional[asyncio.Event] = None
        self.write_gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None
        self.malformed = False

        self.timestamp_reads = 0
        self.snapshot_reads = 0
        self.write_attempts = 0
        self.writes = 0
        self.closed = False

    def seed(self, snapshot: AppData) -> datetime:
        """Simulate another device pushing ``snapshot``."""
        self.timestamp = self.clock.now()
        self.snapshot = snapshot.model_copy(update={'last_synced': self.timestamp}, deep=True)
        return self.timestamp

    async def read_remote_timestamp(self):
        self.timestamp_reads += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return self.timestamp

    async def read_remote_snapshot(self):
        self.snapshot_reads += 1
        if self.snapshot_gate is not None:
            await self.snapshot_gate.wait()
        if self.malformed:
            raise ValidationError("tasks.json must contain a JSON array")
        if self.snapshot is None:
            return AppData()
        return self.snapshot.model_copy(deep=True)

    async def write_remote_snapshot(self, snapshot, expected_version, force=False):
        self.write_attempts += 1
        if self.write_gate is not None:
            await self.write_gate.wait()
        if not force and self.timestamp is not None and self.timestamp != expected_version:
            raise VersionConflictError("fake remote changed")

        self.clock.observe(snapshot.latest_edit())
        self.timestamp = self.clock.now()
        self.snapshot = snapshot.model_copy(update={'last_synced': self.timestamp}, deep=True)
        self.writes += 1
        return self.timestamp

    async def aclose(self):
        self.closed = True


class FakeGitHub:
    """Minimal GitHub contents / commits API served through httpx.MockTransport."""

    def __init__(self, owner: str = "octo", repo: str = "data"):
        self.prefix = f"/repos/{owner}/{repo}"
        self.files: Dict[str, Tuple[str, str]] = {}
        self.commit_dates: Dict[str, str] = {}
        self.puts: List[str] = []
        self.token: Optional[str] = None
        self._counter = 0

    def put_file(self, path: str, content: str) -> str:
        self._counter += 1
        sha = hashlib.sha1(f"{self._counter}:{content}".encode()).hexdigest()
        self.files[path] = (content, sha)
        return sha

    def read_json(self, path: str):
        return json.loads(self.files[path][0])

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.token is not None and request.headers.get("Authorization") != f"token {self.token}":
            return httpx.Response(401, json={"message": "Bad credentials"})

        url_path = unquote(request.url.path)
        if url_path == f"{self.prefix}/commits":
            path = request.url.params.get("path")
            date = self.commit_dates.get(path)
            commits = [{"commit": {"committer": {"date": date}}}] if date else []
            return httpx.Response(200, json=commits)

        contents = f"{self.prefix}/contents/"
        if not url_path.startswith(contents):
            return httpx.Response(404, json={"message": "Not Found"})
        path = url_path[len(contents):]

        if request.method == "GET":
            if path not in self.files:
                return httpx.Response(404, json={"message": "Not Found"})
            content, sha = self.files[path]
            encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
            # GitHub wraps base64 content at 60 characters
            wrapped = "\n".join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
            return httpx.Response(200, json={"content": wrapped, "encoding": "base64", "sha": sha, "path": path})

        if request.method == "PUT":
            body = json.loads(request.content)
            current = self.files.get(path)
            if current is not None and "sha" not in body:
                return httpx.Response(422, json={"message": "\"sha\" wasn't supplied."})
            if current is not None and body["sha"] != current[1]:
                return httpx.Response(409, json={"message": f"{path} does not match {body['sha']}"})

            content = base64.b64decode(body["content"]).decode("utf-8")
            sha = self.put_file(path, content)
            self.puts.append(path)
            return httpx.Response(201 if current is None else 200, json={"content": {"path": path, "sha": sha}})

        return httpx.Response(405, json={"message": "Method Not Allowed"})


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    close_log_file()
    structlog.reset_defaults()


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def store(state_dir):
    return LocalStore(str(state_dir))


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_github():
    return FakeGitHub()


def make_coordinator(
    store: LocalStore,
    backend: Optional[SyncBackend],
    debounce_ms: int = 3000
) -> SyncCoordinator:
    """Coordinator whose backend factory hands out ``backend``."""
    config = TccSyncConfig(
        state_dir=str(store.state_dir),
        cloudflare=CloudflareConfig(api_url="http://sync.test") if backend is not None else None,
        sync=SyncSettings(debounce_ms=debounce_ms),
    )
    context = SyncContext(
        config,
        store,
        parser=ConfigParser(str(store.state_dir)),
        backend_factory=lambda config, clock=None, transport=None: backend,
    )
    return SyncCoordinator(context)


@pytest.fixture
async def coordinator_factory():
    created = []

    def factory(store, backend, debounce_ms=3000):
        coordinator = make_coordinator(store, backend, debounce_ms=debounce_ms)
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.shutdown()


@pytest.fixture
async def coordinator(coordinator_factory, store, fake_backend):
    return coordinator_factory(store, fake_backend)
