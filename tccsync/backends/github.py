"""
GitHub 同步后端

功能:
- 每个集合一个 JSON 文件（基础路径下的分割布局）
- userSettings.json 作为清单文件，记录 lastModified，每次推送最后写入
- 基于文件 sha 的乐观并发写入
- 旧版单文件格式的一次性迁移
"""

import asyncio
import base64
import json
import posixpath
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
import httpx
import structlog

from tccsync.backends.base import HttpSyncBackend
from tccsync.config.models import GitHubConfig
from tccsync.core.clock import MonotonicClock, ensure_aware
from tccsync.core.models import COLLECTIONS, SCHEMA_VERSION, AppData
from tccsync.errors import (
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)

logger = structlog.get_logger()

MANIFEST_FILE = "userSettings.json"
MIGRATION_MARKER = ".migrated"

# 集合 -> 文件名
SPLIT_FILES: Dict[str, str] = {name: f"{name}.json" for name in COLLECTIONS}


class GitHubBackend(HttpSyncBackend):
    """GitHub Contents API 后端"""

    name = "github"

    def __init__(
        self,
        config: GitHubConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[MonotonicClock] = None
    ):
        """
        初始化 GitHub 后端

        Args:
            config: GitHub 配置
            timeout: 请求超时（秒）
            transport: 自定义传输层
            clock: 时钟
        """
        if not config.is_complete():
            raise ConfigurationError("GitHub config requires token, owner and repo")

        super().__init__(
            base_url=config.api_base,
            headers={
                'Authorization': f"token {config.token}",
                'Accept': 'application/vnd.github.v3+json',
            },
            timeout=timeout,
            transport=transport
        )

        self.config = config
        self.clock = clock or MonotonicClock()
        self.base_path = posixpath.dirname(config.data_path or "data/tasks.json")
        self._migration_checked = False

        logger.info(
            "GitHub backend initialized",
            owner=config.owner,
            repo=config.repo,
            base_path=self.base_path or "/"
        )

    # ========== 路径 ==========

    def file_path(self, file_name: str) -> str:
        return posixpath.join(self.base_path, file_name) if self.base_path else file_name

    @property
    def manifest_path(self) -> str:
        return self.file_path(MANIFEST_FILE)

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.config.owner}/{self.config.repo}/contents/{path}"

    # ========== 同步接口 ==========

    async def prepare(self, watermark: Optional[datetime] = None):
        """首次同步前检查是否需要从单文件格式迁移"""
        if self._migration_checked:
            return

        await self._migrate_legacy_file()
        self._migration_checked = True

    async def read_remote_timestamp(self) -> Optional[datetime]:
        """
        远程最后修改时间

        优先使用清单中的 lastModified，旧清单没有该字段时使用最近一次提交的时间。
        """
        manifest = await self._get_file(self.manifest_path)
        if manifest is None:
            return None

        stamp = _parse_manifest(manifest[0]).get('lastModified')
        if stamp:
            return _parse_datetime(stamp, self.manifest_path)

        return await self._last_commit_date(self.manifest_path)

    async def read_remote_snapshot(self) -> AppData:
        """并行读取所有分割文件并合并"""
        paths = [self.file_path(SPLIT_FILES[name]) for name in COLLECTIONS]
        results = await asyncio.gather(
            *(self._get_file(path) for path in paths),
            self._get_file(self.manifest_path)
        )

        payload: Dict[str, Any] = {'schemaVersion': SCHEMA_VERSION}
        for name, path, result in zip(COLLECTIONS, paths, results[:-1]):
            if result is None:
                payload[name] = []
                continue
            records = _loads(result[0], path)
            if not isinstance(records, list):
                raise ValidationError(f"{path} must contain a JSON array")
            payload[name] = records

        manifest = results[-1]
        if manifest is not None:
            meta = _parse_manifest(manifest[0])
            payload['userSettings'] = meta.get('settings') or {}
            payload['lastSynced'] = meta.get('lastModified')

        return AppData.from_payload(payload)

    async def write_remote_snapshot(
        self,
        snapshot: AppData,
        expected_version: Optional[datetime],
        force: bool = False
    ) -> Optional[datetime]:
        """
        写入所有分割文件，清单最后写入

        Raises:
            VersionConflictError: 远程在水位线之后被修改，或文件 sha 不匹配
        """
        if not force:
            remote_timestamp = await self.read_remote_timestamp()
            if remote_timestamp is not None and remote_timestamp != ensure_aware(expected_version):
                raise VersionConflictError(
                    f"Remote modified at {remote_timestamp.isoformat()}, "
                    f"expected {expected_version.isoformat() if expected_version else 'no remote data'}"
                )
            self.clock.observe(remote_timestamp)

        self.clock.observe(snapshot.latest_edit())
        stamp = self.clock.now()

        written = await self._write_split_files(snapshot, stamp)

        logger.info(
            "Snapshot written to GitHub",
            files_written=written,
            last_modified=stamp.isoformat(),
            forced=force
        )
        return stamp

    # ========== 迁移 ==========

    async def _migrate_legacy_file(self):
        """
        单文件 -> 分割文件迁移

        条件: 清单不存在、迁移标记不存在、data_path 是包含完整 AppData 的 JSON 对象。
        """
        if await self._get_file(self.manifest_path) is not None:
            return

        marker_path = self.file_path(MIGRATION_MARKER)
        if await self._get_file(marker_path) is not None:
            return

        legacy = await self._get_file(self.config.data_path)
        if legacy is None:
            return

        raw = _loads(legacy[0], self.config.data_path)
        if not isinstance(raw, dict):
            # 已经是分割格式的集合文件
            return

        logger.info("Migrating legacy single-file data", path=self.config.data_path)

        data = AppData.from_payload(raw)
        self.clock.observe(data.latest_edit())
        stamp = data.last_synced or self.clock.now()

        await self._write_split_files(data, stamp)

        migrated_at = self.clock.now().isoformat()
        await self._put_file(
            marker_path,
            json.dumps({'migrated': True, 'migratedAt': migrated_at}),
            "Migration completed",
            sha=None
        )

        logger.info(
            "Legacy data migrated",
            path=self.config.data_path,
            records=sum(1 for _ in data.iter_records())
        )

    # ========== 文件操作 ==========

    async def _write_split_files(self, snapshot: AppData, stamp: datetime) -> int:
        """
        顺序写入集合文件（内容未变化的跳过），最后写入清单

        Returns:
            实际写入的文件数
        """
        written = 0
        for name in COLLECTIONS:
            path = self.file_path(SPLIT_FILES[name])
            content = _dumps([record.to_dict() for record in snapshot.get_collection(name)])
            if await self._write_if_changed(path, content, f"Update {name} data"):
                written += 1

        manifest = _dumps({
            'schemaVersion': SCHEMA_VERSION,
            'lastModified': stamp.isoformat(),
            'settings': snapshot.user_settings,
        })
        await self._write_if_changed(self.manifest_path, manifest, f"Sync - {stamp.isoformat()}")
        return written + 1

    async def _write_if_changed(self, path: str, content: str, message: str) -> bool:
        current = await self._get_file(path)
        if current is not None and current[0] == content:
            return False

        sha = current[1] if current is not None else None
        await self._put_file(path, content, message, sha)
        return True

    async def _get_file(self, path: str) -> Optional[Tuple[str, str]]:
        """
        读取文件

        Returns:
            (内容, sha)，文件不存在时返回 None
        """
        try:
            response = await self._request('GET', self._contents_url(path))
        except NotFoundError:
            return None

        data = self._json(response)
        if not isinstance(data, dict) or 'sha' not in data:
            raise ValidationError(f"Unexpected contents response for {path}")

        if data.get('encoding') != 'base64' or data.get('content') is None:
            raise ValidationError(f"Invalid file encoding for {path}")

        raw = ''.join(data['content'].split())
        try:
            content = base64.b64decode(raw).decode('utf-8')
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError(f"Failed to decode {path}: {e}") from e

        return content, data['sha']

    async def _put_file(self, path: str, content: str, message: str, sha: Optional[str]) -> Dict[str, Any]:
        """
        写入文件，sha 作为前置条件

        Raises:
            VersionConflictError: sha 不匹配（409 / 422）
        """
        body: Dict[str, Any] = {
            'message': message,
            'content': base64.b64encode(content.encode('utf-8')).decode('ascii'),
        }
        if sha:
            body['sha'] = sha

        try:
            response = await self._request('PUT', self._contents_url(path), json=body)
        except NetworkError as e:
            if e.status == 422:
                raise VersionConflictError(f"GitHub rejected write to {path}: {e.message}", status=422) from e
            raise

        logger.debug("GitHub file written", path=path, created=sha is None)
        return self._json(response)

    async def _last_commit_date(self, path: str) -> Optional[datetime]:
        try:
            response = await self._request(
                'GET',
                f"/repos/{self.config.owner}/{self.config.repo}/commits",
                params={'path': path, 'per_page': 1}
            )
        except NotFoundError:
            return None

        commits = self._json(response)
        if not isinstance(commits, list) or not commits:
            return None

        try:
            date = commits[0]['commit']['committer']['date']
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Unexpected commits response for {path}") from e
        return _parse_datetime(date, path)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


def _loads(content: str, path: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from e


def _parse_manifest(content: str) -> Dict[str, Any]:
    meta = _loads(content, MANIFEST_FILE)
    if not isinstance(meta, dict):
        raise ValidationError(f"{MANIFEST_FILE} must contain a JSON object")
    return meta


def _parse_datetime(value: Any, source: str) -> datetime:
    if not isinstance(value, str):
        raise ValidationError(f"Invalid timestamp in {source}: {value!r}")
    try:
        return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp in {source}: {value!r}") from e


