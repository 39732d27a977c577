"""
后端间数据迁移

GitHub -> Cloudflare:
1. 必要时先把旧版单文件格式迁移为分割文件
2. 读取 GitHub 上的完整数据
3. 强制写入 Cloudflare（覆盖服务器数据）
4. 重新读取 Cloudflare 数据，按集合比较记录数
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import structlog

from tccsync.backends.cloudflare import CloudflareBackend
from tccsync.backends.github import GitHubBackend

logger = structlog.get_logger()


@dataclass
class MigrationReport:
    """迁移结果"""
    source_counts: Dict[str, int] = field(default_factory=dict)
    target_counts: Dict[str, int] = field(default_factory=dict)
    last_synced: Optional[datetime] = None

    @property
    def mismatches(self) -> Dict[str, Any]:
        """记录数不一致的集合 -> (源, 目标)"""
        names = set(self.source_counts) | set(self.target_counts)
        return {
            name: (self.source_counts.get(name, 0), self.target_counts.get(name, 0))
            for name in sorted(names)
            if self.source_counts.get(name, 0) != self.target_counts.get(name, 0)
        }

    @property
    def verified(self) -> bool:
        return not self.mismatches


async def migrate_github_to_cloudflare(source: GitHubBackend, target: CloudflareBackend) -> MigrationReport:
    """
    把 GitHub 上的数据迁移到 Cloudflare

    Args:
        source: GitHub 后端
        target: Cloudflare 后端

    Returns:
        MigrationReport

    Raises:
        SyncError: 任一端请求失败或数据格式错误
    """
    logger.info("Migration started", source=source.name, target=target.name)

    await source.prepare()
    data = await source.read_remote_snapshot()
    source_counts = _totals(data)

    await target.prepare()
    stamp = await target.write_remote_snapshot(data, expected_version=None, force=True)

    # 丢弃写入响应缓存，重新读取服务器数据做校验
    await target.prepare()
    imported = await target.read_remote_snapshot()

    report = MigrationReport(
        source_counts=source_counts,
        target_counts=_totals(imported),
        last_synced=stamp
    )

    if report.verified:
        logger.info("Migration completed", records=sum(source_counts.values()))
    else:
        logger.warning("Migration finished with mismatched counts", mismatches=report.mismatches)

    return report


def _totals(snapshot) -> Dict[str, int]:
    return {
        name: counts['active'] + counts['deleted']
        for name, counts in snapshot.count().items()
        if counts['active'] or counts['deleted']
    }
