"""
双向同步引擎

一轮同步:
1. 读取远程时间戳
2. 本地有修改时先推送（带版本检查），冲突时记录双方快照
3. 否则比较水位线与远程时间戳，决定拉取或无操作
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
import structlog

from tccsync.backends.base import SyncBackend
from tccsync.bidirectional.conflict_detector import ConflictDetector, ConflictInfo, SyncAction
from tccsync.core.clock import utcnow
from tccsync.core.local_store import LocalStore
from tccsync.core.models import AppData
from tccsync.errors import VersionConflictError

logger = structlog.get_logger()


class SyncResult(str, Enum):
    """同步结果"""
    PULLED = "pulled"
    PUSHED = "pushed"
    UP_TO_DATE = "up-to-date"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    ERROR = "error"
    CANCELLED = "cancelled"


class SyncReport:
    """一次同步的结果"""

    def __init__(
        self,
        result: SyncResult,
        message: str,
        conflict: Optional[ConflictInfo] = None
    ):
        self.result = result
        self.message = message
        self.conflict = conflict

    def to_dict(self) -> Dict[str, Any]:
        return {
            'result': self.result.value,
            'message': self.message,
            'conflict': self.conflict.to_dict() if self.conflict else None
        }

    def __repr__(self):
        return f"SyncReport(result={self.result.value}, message={self.message!r})"


class SyncEngine:
    """单轮同步"""

    def __init__(
        self,
        store: LocalStore,
        backend: SyncBackend,
        detector: Optional[ConflictDetector] = None
    ):
        """
        初始化同步引擎

        Args:
            store: 本地存储
            backend: 同步后端
            detector: 变更检测器
        """
        self.store = store
        self.backend = backend
        self.detector = detector or ConflictDetector()

    async def run(self) -> SyncReport:
        """
        执行一轮同步

        Returns:
            SyncReport（pulled / pushed / up-to-date / conflict）

        Raises:
            SyncError: 后端错误（网络、配置、数据格式）
            PersistenceError: 本地写入失败
        """
        snapshot = self.store.snapshot()
        watermark = snapshot.last_synced

        await self.backend.prepare(watermark)

        remote_timestamp = await self.backend.read_remote_timestamp()
        action = self.detector.decide(snapshot, remote_timestamp)

        if action == SyncAction.PUSH:
            return await self._push(snapshot)

        if action == SyncAction.NONE:
            logger.info("Already up to date", backend=self.backend.name, watermark=watermark.isoformat())
            return SyncReport(SyncResult.UP_TO_DATE, "Already up to date")

        return await self._pull(snapshot, remote_timestamp)

    async def _push(self, snapshot: AppData) -> SyncReport:
        """推送本地快照，版本检查失败时返回冲突"""
        watermark = snapshot.last_synced

        try:
            version = await self.backend.write_remote_snapshot(snapshot, expected_version=watermark)
        except VersionConflictError as e:
            logger.warning("Remote changed since last sync", backend=self.backend.name, error=e.message)
            conflict = await self._build_conflict(snapshot, e.message)
            return SyncReport(
                SyncResult.CONFLICT,
                "Remote data was modified on another device",
                conflict=conflict
            )

        self.store.set_watermark(version or utcnow())
        self.store.restamp_changes(snapshot)

        logger.info(
            "Local changes pushed",
            backend=self.backend.name,
            watermark=self.store.watermark.isoformat()
        )
        return SyncReport(SyncResult.PUSHED, "Local changes uploaded")

    async def _pull(self, snapshot: AppData, remote_timestamp: datetime) -> SyncReport:
        """用远程快照整体覆盖本地"""
        remote = await self.backend.read_remote_snapshot()

        current = self.store.snapshot()
        if current.content_payload() != snapshot.content_payload():
            # 拉取期间本地发生了编辑，保留本地修改，下一轮推送
            logger.info("Local data changed during pull, keeping local edits", backend=self.backend.name)
            return SyncReport(SyncResult.SKIPPED, "Local data changed during sync")

        self.store.replace(remote.model_copy(update={'last_synced': remote_timestamp}))

        logger.info(
            "Remote changes pulled",
            backend=self.backend.name,
            watermark=remote_timestamp.isoformat(),
            records=sum(1 for _ in remote.iter_records())
        )
        return SyncReport(SyncResult.PULLED, "Remote changes downloaded")

    async def _build_conflict(self, snapshot: AppData, details: str) -> ConflictInfo:
        remote = await self.backend.read_remote_snapshot()
        remote_timestamp = await self.backend.read_remote_timestamp()

        conflict = ConflictInfo(
            local_snapshot=snapshot,
            remote_snapshot=remote.model_copy(update={'last_synced': remote_timestamp}),
            local_last_modified=snapshot.latest_edit(),
            remote_last_modified=remote_timestamp,
            details=details
        )

        logger.info("Conflict detected", backend=self.backend.name, **conflict.to_dict())
        return conflict
