"""
tccsync - offline-first sync engine for a personal data manager

Features:
- Local JSON store with soft-delete tombstones and change notifications
- Pluggable remote backends (GitHub repository files, Cloudflare-style REST endpoint)
- Debounced bidirectional sync with optimistic concurrency
- Explicit, human-driven conflict resolution
- Reference sync server (FastAPI + SQLite)
"""

__version__ = "0.1.0"

from tccsync.bidirectional.coordinator import SyncContext, SyncCoordinator
from tccsync.core.local_store import LocalStore
from tccsync.core.models import AppData

__all__ = ["SyncContext", "SyncCoordinator", "LocalStore", "AppData", "__version__"]
