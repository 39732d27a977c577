"""
同步协调器

功能:
- 检测当前启用的后端
- 合并短时间内的多次修改（防抖）
- 保证同一时间最多一轮同步
- 页面隐藏 / 退出前立即同步
- 冲突交给冲突解决器，由用户明确选择
"""

import asyncio
import signal
from typing import Optional, Dict, Any, Callable, Set, Union
import httpx
import structlog

from tccsync.backends import create_backend
from tccsync.backends.base import SyncBackend
from tccsync.bidirectional.conflict_resolver import ConflictResolver, ResolutionChoice
from tccsync.bidirectional.sync_engine import SyncEngine, SyncReport, SyncResult
from tccsync.config.models import BACKEND_NONE, LoggingConfig, SyncSettings, TccSyncConfig
from tccsync.config.parser import ConfigParser
from tccsync.core.clock import utcnow
from tccsync.core.local_store import LocalStore
from tccsync.errors import ConfigurationError

logger = structlog.get_logger()


class SyncContext:
    """
    同步上下文

    启动时构建一次，注入协调器。配置变更后显式调用 reload_config()。
    """

    def __init__(
        self,
        config: TccSyncConfig,
        store: LocalStore,
        parser: Optional[ConfigParser] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backend_factory: Callable[..., Optional[SyncBackend]] = create_backend
    ):
        """
        初始化同步上下文

        Args:
            config: 主配置
            store: 本地存储
            parser: 配置解析器（用于重新读取配置）
            transport: 自定义 HTTP 传输层
            backend_factory: 后端工厂
        """
        self.config = config
        self.store = store
        self.parser = parser or ConfigParser(config.state_dir)
        self.transport = transport
        self.backend_factory = backend_factory

    @classmethod
    def from_state_dir(
        cls,
        state_dir: Optional[str] = None,
        sync: Optional[SyncSettings] = None,
        logging_config: Optional[LoggingConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> 'SyncContext':
        """从状态目录读取配置和本地数据"""
        parser = ConfigParser(state_dir)
        config = parser.parse(sync=sync, logging_config=logging_config)
        store = LocalStore(config.state_dir)
        return cls(config, store, parser=parser, transport=transport)

    @property
    def backend_type(self) -> str:
        return self.config.detect_backend()

    def reload_config(self) -> str:
        """重新读取后端配置，返回新的后端类型"""
        self.config = self.parser.parse(sync=self.config.sync, logging_config=self.config.logging)
        return self.backend_type

    def create_backend(self) -> Optional[SyncBackend]:
        return self.backend_factory(self.config, clock=self.store.clock, transport=self.transport)


class SyncCoordinator:
    """同步协调器"""

    def __init__(self, context: SyncContext):
        """
        初始化同步协调器

        Args:
            context: 同步上下文
        """
        self.context = context
        self.store = context.store
        self.resolver = ConflictResolver(self.store)

        self.debounce_seconds = context.config.sync.debounce_ms / 1000.0
        self.backend_type = context.backend_type

        # 状态
        self.syncing = False
        self.last_synced_at = None
        self.pending_changes = False
        self.error: Optional[str] = None

        self._backend: Optional[SyncBackend] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._changed_during_sync = False

        self.stats = {
            'changes_marked': 0,
            'syncs_started': 0,
            'syncs_completed': 0,
            'syncs_skipped': 0,
            'syncs_failed': 0,
            'conflicts_detected': 0,
            'pulled': 0,
            'pushed': 0,
        }

        self._unsubscribe = self.store.subscribe(self.mark_changed)

        logger.info(
            "Sync coordinator initialized",
            backend=self.backend_type,
            debounce_ms=context.config.sync.debounce_ms
        )

    @property
    def conflict(self):
        return self.resolver.conflict

    # ========== 后端 ==========

    def detect_backend(self) -> str:
        """根据当前配置判断后端类型"""
        self.backend_type = self.context.backend_type
        return self.backend_type

    async def reload_config(self) -> str:
        """
        重新读取配置并重新检测后端

        Returns:
            新的后端类型
        """
        previous = self.backend_type
        self.context.reload_config()
        self.detect_backend()

        if self._backend is not None:
            await self._backend.aclose()
            self._backend = None

        if self.backend_type == BACKEND_NONE:
            self._cancel_debounce()

        logger.info("Sync configuration reloaded", previous=previous, backend=self.backend_type)
        return self.backend_type

    def _get_backend(self) -> SyncBackend:
        """
        获取（必要时创建）后端实例

        Raises:
            ConfigurationError: 后端配置不完整
        """
        if self._backend is None:
            backend = self.context.create_backend()
            if backend is None:
                raise ConfigurationError("No sync backend configured")
            self._backend = backend
        return self._backend

    # ========== 触发 ==========

    def mark_changed(self):
        """
        本地数据已变更

        未配置后端时不做任何事；否则标记待同步并重新开始静默期计时。
        """
        if self.backend_type == BACKEND_NONE:
            return

        self.pending_changes = True
        self.stats['changes_marked'] += 1
        if self.syncing:
            self._changed_during_sync = True

        self._cancel_debounce()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, sync deferred")
            return

        self._debounce_task = self._track(loop.create_task(self._debounce_worker()))

    async def _debounce_worker(self):
        """静默期结束后同步一次"""
        try:
            await asyncio.sleep(self.debounce_seconds)
        except asyncio.CancelledError:
            return

        # 同步开始后不再允许被新的修改取消
        self._debounce_task = None
        await self.sync_now()

    def _cancel_debounce(self):
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ========== 同步 ==========

    async def sync_now(self) -> SyncReport:
        """
        立即同步一次

        不会抛出异常，结果为 pulled / pushed / up-to-date / conflict / skipped / error。

        Returns:
            SyncReport
        """
        if self.backend_type == BACKEND_NONE:
            return SyncReport(SyncResult.SKIPPED, "No sync backend configured")

        if self.syncing:
            self.stats['syncs_skipped'] += 1
            logger.debug("Sync already in progress, skipping")
            return SyncReport(SyncResult.SKIPPED, "Sync already in progress")

        if self.resolver.has_conflict:
            return SyncReport(
                SyncResult.CONFLICT,
                "A sync conflict is waiting for resolution",
                conflict=self.resolver.conflict
            )

        self.syncing = True
        self._changed_during_sync = False
        self.stats['syncs_started'] += 1

        logger.info("Sync started", backend=self.backend_type)

        try:
            engine = SyncEngine(self.store, self._get_backend())
            report = await engine.run()

        except ConfigurationError as e:
            self.stats['syncs_skipped'] += 1
            logger.warning("Sync skipped, backend not usable", backend=self.backend_type, error=e.message)
            return SyncReport(SyncResult.SKIPPED, e.message)

        except Exception as e:
            self.error = str(e)
            self.stats['syncs_failed'] += 1
            logger.error("Sync failed", backend=self.backend_type, error=str(e), exc_info=True)
            return SyncReport(SyncResult.ERROR, f"Sync failed: {e}")

        finally:
            self.syncing = False

        if report.result == SyncResult.SKIPPED:
            # 本轮被中止，本地编辑仍待同步
            self.stats['syncs_skipped'] += 1
            logger.info("Sync round skipped", backend=self.backend_type, reason=report.message)
            return report

        if report.result == SyncResult.CONFLICT:
            self.stats['conflicts_detected'] += 1
            self.resolver.open(report.conflict)

        self._complete(report)
        return report

    def _complete(self, report: SyncReport):
        """非错误结果后更新状态"""
        self.last_synced_at = utcnow()
        self.pending_changes = self._changed_during_sync
        self.error = None
        self.stats['syncs_completed'] += 1
        if report.result == SyncResult.PULLED:
            self.stats['pulled'] += 1
        elif report.result == SyncResult.PUSHED:
            self.stats['pushed'] += 1

        logger.info(
            "Sync finished",
            backend=self.backend_type,
            result=report.result.value,
            pending_changes=self.pending_changes
        )

    async def resolve_conflict(self, choice: Union[str, ResolutionChoice]) -> SyncReport:
        """
        按用户选择解决当前冲突

        Raises:
            ConflictError: 没有待解决的冲突
            ValueError: 未知选项
        """
        choice = ResolutionChoice.parse(choice)

        if self.syncing:
            self.stats['syncs_skipped'] += 1
            logger.debug("Sync already in progress, resolution skipped", choice=choice.value)
            return SyncReport(SyncResult.SKIPPED, "Sync already in progress")

        self.syncing = True
        self._changed_during_sync = False
        try:
            backend = self._get_backend() if choice == ResolutionChoice.LOCAL else None
            report = await self.resolver.resolve(choice, backend)
        except ConfigurationError as e:
            logger.warning("Conflict resolution skipped", error=e.message)
            return SyncReport(SyncResult.SKIPPED, e.message)
        except Exception as e:
            if not self.resolver.has_conflict:
                raise
            self.error = str(e)
            self.stats['syncs_failed'] += 1
            logger.error("Conflict resolution failed", choice=choice.value, error=str(e))
            return SyncReport(SyncResult.ERROR, f"Conflict resolution failed: {e}")
        finally:
            self.syncing = False

        if report.result != SyncResult.CANCELLED:
            self._complete(report)
        return report

    # ========== 生命周期 ==========

    def on_page_hidden(self) -> Optional[asyncio.Task]:
        """页面隐藏时立即同步未同步的修改"""
        return self._flush("page_hidden")

    def on_before_unload(self) -> Optional[asyncio.Task]:
        """退出前立即同步未同步的修改"""
        return self._flush("before_unload")

    def _flush(self, reason: str) -> Optional[asyncio.Task]:
        if not self.pending_changes or self.syncing or self.backend_type == BACKEND_NONE:
            return None

        self._cancel_debounce()
        logger.info("Flushing pending changes", reason=reason)
        return self._track(asyncio.get_running_loop().create_task(self.sync_now()))

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """SIGTERM / SIGINT 时触发退出前同步"""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.on_before_unload)
            except (NotImplementedError, RuntimeError):
                logger.warning("Signal handlers not supported on this platform", signal=sig.name)
                return
        logger.debug("Signal handlers installed")

    async def shutdown(self):
        """取消防抖计时，等待后台同步完成并释放后端"""
        self._cancel_debounce()
        self._unsubscribe()

        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

        if self._backend is not None:
            await self._backend.aclose()
            self._backend = None

        logger.info("Sync coordinator stopped", stats=self.stats)

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        return {
            **self.stats,
            'backend': self.backend_type,
            'syncing': self.syncing,
            'pending_changes': self.pending_changes,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'error': self.error,
            'conflict': self.resolver.conflict.to_dict() if self.resolver.has_conflict else None,
        }
