"""
同步后端

- github: GitHub Contents API，每个集合一个文件
- cloudflare: 单一 REST 同步端点
"""

from typing import Optional
import httpx
import structlog

from tccsync.backends.base import SyncBackend
from tccsync.backends.cloudflare import CloudflareBackend
from tccsync.backends.github import GitHubBackend
from tccsync.backends.transfer import MigrationReport, migrate_github_to_cloudflare
from tccsync.config.models import BACKEND_CLOUDFLARE, BACKEND_GITHUB, TccSyncConfig
from tccsync.core.clock import MonotonicClock

logger = structlog.get_logger()


def create_backend(
    config: TccSyncConfig,
    clock: Optional[MonotonicClock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[SyncBackend]:
    """
    根据配置创建后端

    Args:
        config: 主配置
        clock: 共享时钟（与本地存储共用）
        transport: 自定义传输层

    Returns:
        后端实例，未配置后端时返回 None
    """
    backend_type = config.detect_backend()
    timeout = config.sync.request_timeout

    if backend_type == BACKEND_GITHUB:
        return GitHubBackend(config.github, timeout=timeout, transport=transport, clock=clock)
    if backend_type == BACKEND_CLOUDFLARE:
        return CloudflareBackend(config.cloudflare, timeout=timeout, transport=transport)

    logger.debug("No sync backend configured")
    return None


__all__ = [
    'SyncBackend',
    'GitHubBackend',
    'CloudflareBackend',
    'create_backend',
    'MigrationReport',
    'migrate_github_to_cloudflare',
]
