"""
双向同步模块

功能:
- 变更检测
- 单轮同步（推送 / 拉取 / 无操作 / 冲突）
- 冲突解决
- 防抖和生命周期协调
"""

from tccsync.bidirectional.conflict_detector import ConflictDetector, ConflictInfo, SyncAction
from tccsync.bidirectional.conflict_resolver import ConflictResolver, ResolutionChoice
from tccsync.bidirectional.sync_engine import SyncEngine, SyncReport, SyncResult
from tccsync.bidirectional.coordinator import SyncContext, SyncCoordinator

__all__ = [
    'ConflictDetector',
    'ConflictInfo',
    'SyncAction',
    'ConflictResolver',
    'ResolutionChoice',
    'SyncEngine',
    'SyncReport',
    'SyncResult',
    'SyncContext',
    'SyncCoordinator',
]
