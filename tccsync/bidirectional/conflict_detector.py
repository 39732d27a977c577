"""
冲突检测器

功能:
- 判断本地是否有未同步的修改（最新编辑时间 vs 水位线）
- 根据远程时间戳决定推送 / 拉取 / 无操作
- 记录推送失败时双方的快照（ConflictInfo）
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
import structlog

from tccsync.core.clock import utcnow
from tccsync.core.models import AppData

logger = structlog.get_logger()


class SyncAction(Enum):
    """同步方向"""
    PUSH = "push"  # 本地 -> 远程
    PULL = "pull"  # 远程 -> 本地
    NONE = "none"  # 双方一致


class ConflictInfo:
    """冲突信息（一次推送失败时创建，解决后销毁）"""

    def __init__(
        self,
        local_snapshot: AppData,
        remote_snapshot: AppData,
        local_last_modified: Optional[datetime],
        remote_last_modified: Optional[datetime],
        details: Optional[str] = None
    ):
        """
        初始化冲突信息

        Args:
            local_snapshot: 本地快照
            remote_snapshot: 远程快照
            local_last_modified: 本地最新编辑时间
            remote_last_modified: 远程最后修改时间
            details: 冲突详情描述
        """
        self.local_snapshot = local_snapshot
        self.remote_snapshot = remote_snapshot
        self.local_last_modified = local_last_modified
        self.remote_last_modified = remote_last_modified
        self.details = details
        self.detected_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（不含完整快照）"""
        return {
            'local_last_modified': _iso(self.local_last_modified),
            'remote_last_modified': _iso(self.remote_last_modified),
            'local_counts': _active_counts(self.local_snapshot),
            'remote_counts': _active_counts(self.remote_snapshot),
            'details': self.details,
            'detected_at': self.detected_at.isoformat()
        }

    def __repr__(self):
        return (
            f"ConflictInfo(local={_iso(self.local_last_modified)}, "
            f"remote={_iso(self.remote_last_modified)})"
        )


class ConflictDetector:
    """基于时间戳的变更检测"""

    def has_local_changes(self, snapshot: AppData) -> bool:
        """
        本地是否有未同步的修改

        没有水位线时，只要存在任何时间戳就视为有修改；
        完全空的数据集视为无修改（新设备直接拉取）。

        Args:
            snapshot: 本地快照

        Returns:
            是否需要推送
        """
        latest = snapshot.latest_edit()
        if latest is None:
            return False
        if snapshot.last_synced is None:
            return True
        return latest > snapshot.last_synced

    def decide(self, snapshot: AppData, remote_timestamp: Optional[datetime]) -> SyncAction:
        """
        决定同步方向

        本地有修改时总是先尝试推送，由后端的版本检查发现冲突。

        Args:
            snapshot: 本地快照
            remote_timestamp: 远程最后修改时间（远程无数据时为 None）

        Returns:
            SyncAction
        """
        watermark = snapshot.last_synced

        if self.has_local_changes(snapshot):
            action = SyncAction.PUSH
        elif remote_timestamp is None:
            # 首次同步
            action = SyncAction.PUSH
        elif watermark is not None and watermark == remote_timestamp:
            action = SyncAction.NONE
        elif watermark is None or remote_timestamp > watermark:
            action = SyncAction.PULL
        else:
            action = SyncAction.PUSH

        logger.debug(
            "Sync direction decided",
            action=action.value,
            watermark=_iso(watermark),
            remote=_iso(remote_timestamp),
            latest_edit=_iso(snapshot.latest_edit())
        )
        return action


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _active_counts(snapshot: AppData) -> Dict[str, int]:
    return {name: counts['active'] for name, counts in snapshot.count().items() if counts['active']}
