"""
Cloudflare 同步后端

单一 REST 端点:
- GET  /api/sync?lastSynced=<ts>  -> {lastSynced, data}
- POST /api/sync {lastSynced, data} -> {lastSynced, data, conflict?}

服务器自行做并发检查，冲突时返回 conflict=true 而不是 HTTP 错误。
"""

from datetime import datetime
from typing import Any, Dict, Optional
import httpx
import structlog

from tccsync.backends.base import HttpSyncBackend
from tccsync.config.models import CloudflareConfig
from tccsync.core.clock import ensure_aware
from tccsync.core.models import COLLECTIONS, SCHEMA_VERSION, AppData
from tccsync.errors import ConfigurationError, ValidationError, VersionConflictError

logger = structlog.get_logger()

SYNC_ENDPOINT = "/api/sync"


class CloudflareBackend(HttpSyncBackend):
    """Cloudflare Workers 风格的 REST 后端"""

    name = "cloudflare"

    def __init__(
        self,
        config: CloudflareConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if not config.is_complete():
            raise ConfigurationError("Cloudflare config requires api_url")

        headers = {'Content-Type': 'application/json'}
        if config.api_key:
            headers['X-API-Key'] = config.api_key

        super().__init__(
            base_url=config.api_url.rstrip('/'),
            headers=headers,
            timeout=timeout,
            transport=transport
        )

        self.config = config
        self.watermark: Optional[datetime] = None
        self._cached: Optional[Dict[str, Any]] = None

        logger.info("Cloudflare backend initialized", api_url=config.api_url, api_key=bool(config.api_key))

    async def prepare(self, watermark: Optional[datetime] = None):
        """每轮同步开始时丢弃上一轮的响应缓存，记录水位线用于 GET 查询参数"""
        self._cached = None
        self.watermark = watermark

    async def read_remote_timestamp(self) -> Optional[datetime]:
        response = await self._fetch()
        return _parse_timestamp(response.get('lastSynced'))

    async def read_remote_snapshot(self) -> AppData:
        response = await self._fetch()
        return _to_app_data(response)

    async def write_remote_snapshot(
        self,
        snapshot: AppData,
        expected_version: Optional[datetime],
        force: bool = False
    ) -> Optional[datetime]:
        """
        POST 快照

        Raises:
            VersionConflictError: 服务器返回 conflict=true
        """
        payload = snapshot.to_payload()
        body: Dict[str, Any] = {
            'lastSynced': expected_version.isoformat() if expected_version else None,
            'data': {name: payload[name] for name in COLLECTIONS},
        }
        body['data']['userSettings'] = payload['userSettings']
        if force:
            body['force'] = True

        self._cached = None
        response = _unwrap(self._json(await self._request('POST', SYNC_ENDPOINT, json=body)))

        if response.get('conflict'):
            self._cached = response
            raise VersionConflictError("Cloudflare reported a conflict")

        timestamp = _parse_timestamp(response.get('lastSynced'))
        self._cached = response

        logger.info(
            "Snapshot posted to Cloudflare",
            last_synced=timestamp.isoformat() if timestamp else None,
            forced=force
        )
        return timestamp

    async def _fetch(self) -> Dict[str, Any]:
        """GET /api/sync（同一轮同步内复用响应）"""
        if self._cached is not None:
            return self._cached

        params = {}
        if self.watermark is not None:
            params['lastSynced'] = self.watermark.isoformat()

        response = await self._request('GET', SYNC_ENDPOINT, params=params)
        self._cached = _unwrap(self._json(response))
        return self._cached


def _unwrap(body: Any) -> Dict[str, Any]:
    """去掉 {success, data} 外层包装"""
    if not isinstance(body, dict):
        raise ValidationError("Sync response must be a JSON object")
    if 'success' in body and isinstance(body.get('data'), dict):
        body = body['data']
    if 'data' in body and body['data'] is not None and not isinstance(body['data'], dict):
        raise ValidationError("Sync response 'data' must be an object")
    return body


def _to_app_data(response: Dict[str, Any]) -> AppData:
    data = dict(response.get('data') or {})
    data['schemaVersion'] = SCHEMA_VERSION
    data['lastSynced'] = response.get('lastSynced')
    return AppData.from_payload(data)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Invalid lastSynced value: {value!r}")
    try:
        return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError as e:
        raise ValidationError(f"Invalid lastSynced value: {value!r}") from e
