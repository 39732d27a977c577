"""
冲突解决器

功能:
- 同一时间最多保存一个待解决的冲突
- 由用户明确选择: 保留本地 / 保留远程 / 取消
- 冲突打开 / 取消时通知监听器
"""

from enum import Enum
from typing import Optional, Dict, Any, Callable, List, Union
import structlog

from tccsync.backends.base import SyncBackend
from tccsync.bidirectional.conflict_detector import ConflictInfo
from tccsync.bidirectional.sync_engine import SyncReport, SyncResult
from tccsync.core.clock import utcnow
from tccsync.core.local_store import LocalStore
from tccsync.errors import ConfigurationError, ConflictError

logger = structlog.get_logger()


class ResolutionChoice(Enum):
    """冲突解决选项"""
    LOCAL = "local"  # 用本地快照覆盖远程
    REMOTE = "remote"  # 用远程快照覆盖本地
    CANCEL = "cancel"  # 不做任何修改

    @classmethod
    def parse(cls, value: Union[str, 'ResolutionChoice']) -> 'ResolutionChoice':
        """
        解析用户选择

        Raises:
            ValueError: 未知选项
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown resolution choice: {value!r} (expected local, remote or cancel)"
            )


ConflictListener = Callable[[ConflictInfo], None]


class ConflictResolver:
    """冲突解决器"""

    def __init__(self, store: LocalStore):
        """
        初始化冲突解决器

        Args:
            store: 本地存储
        """
        self.store = store
        self.conflict: Optional[ConflictInfo] = None

        self._conflict_listeners: List[ConflictListener] = []
        self._cancel_listeners: List[ConflictListener] = []

        self.stats = {
            'opened': 0,
            'resolved_local': 0,
            'resolved_remote': 0,
            'cancelled': 0,
        }

    @property
    def has_conflict(self) -> bool:
        return self.conflict is not None

    # ========== 监听器 ==========

    def on_conflict(self, callback: ConflictListener):
        """注册冲突打开监听器"""
        self._conflict_listeners.append(callback)

    def on_cancel(self, callback: ConflictListener):
        """注册取消监听器"""
        self._cancel_listeners.append(callback)

    def _emit(self, listeners: List[ConflictListener], conflict: ConflictInfo):
        for callback in list(listeners):
            try:
                callback(conflict)
            except Exception as e:
                logger.error("Conflict listener failed", error=str(e))

    # ========== 冲突生命周期 ==========

    def open(self, conflict: ConflictInfo) -> ConflictInfo:
        """
        打开冲突

        已有待解决的冲突时保留原冲突，不做替换。

        Returns:
            当前待解决的冲突
        """
        if self.conflict is not None:
            logger.warning("Conflict already pending, ignoring new conflict")
            return self.conflict

        self.conflict = conflict
        self.stats['opened'] += 1

        logger.info("Conflict opened", **conflict.to_dict())
        self._emit(self._conflict_listeners, conflict)
        return conflict

    async def resolve(
        self,
        choice: Union[str, ResolutionChoice],
        backend: Optional[SyncBackend] = None
    ) -> SyncReport:
        """
        按用户选择解决冲突

        Args:
            choice: local / remote / cancel
            backend: 同步后端（选择 local 时必需）

        Returns:
            SyncReport（pushed / pulled / cancelled）

        Raises:
            ConflictError: 没有待解决的冲突
            ValueError: 未知选项
            SyncError: 推送失败（冲突保持打开）
        """
        choice = ResolutionChoice.parse(choice)

        conflict = self.conflict
        if conflict is None:
            raise ConflictError("No conflict to resolve")

        logger.info("Resolving conflict", choice=choice.value)

        if choice == ResolutionChoice.LOCAL:
            report = await self._resolve_keep_local(conflict, backend)
        elif choice == ResolutionChoice.REMOTE:
            report = self._resolve_keep_remote(conflict)
        else:
            report = self._resolve_cancel(conflict)

        self.conflict = None
        return report

    async def _resolve_keep_local(self, conflict: ConflictInfo, backend: Optional[SyncBackend]) -> SyncReport:
        """跳过版本检查，用当前本地数据覆盖远程"""
        if backend is None:
            raise ConfigurationError("Cannot keep local data without a sync backend")

        snapshot = self.store.snapshot()
        version = await backend.write_remote_snapshot(
            snapshot,
            expected_version=conflict.remote_last_modified,
            force=True
        )
        self.store.set_watermark(version or utcnow())
        self.store.restamp_changes(snapshot)

        self.stats['resolved_local'] += 1
        logger.info("Conflict resolved with local data", watermark=self.store.watermark.isoformat())
        return SyncReport(SyncResult.PUSHED, "Local data uploaded, remote overwritten")

    def _resolve_keep_remote(self, conflict: ConflictInfo) -> SyncReport:
        """用远程快照覆盖本地"""
        remote = conflict.remote_snapshot.model_copy(update={'last_synced': conflict.remote_last_modified})
        self.store.replace(remote)

        self.stats['resolved_remote'] += 1
        logger.info(
            "Conflict resolved with remote data",
            watermark=conflict.remote_last_modified.isoformat() if conflict.remote_last_modified else None
        )
        return SyncReport(SyncResult.PULLED, "Remote data downloaded, local overwritten")

    def _resolve_cancel(self, conflict: ConflictInfo) -> SyncReport:
        self.stats['cancelled'] += 1
        logger.info("Conflict resolution cancelled")
        self._emit(self._cancel_listeners, conflict)
        return SyncReport(SyncResult.CANCELLED, "Conflict resolution cancelled")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'pending': self.has_conflict,
        }
