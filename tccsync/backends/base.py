"""
同步后端接口

每个后端提供三个操作:
- read_remote_timestamp(): 远程最后修改时间，不存在时返回 None
- read_remote_snapshot(): 远程完整快照
- write_remote_snapshot(snapshot, expected_version): 带乐观并发检查的写入
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
import httpx
import structlog

from tccsync.core.models import AppData
from tccsync.errors import (
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)

logger = structlog.get_logger()


class SyncBackend(ABC):
    """同步后端基类"""

    name = "base"

    async def prepare(self, watermark: Optional[datetime] = None):
        """
        每轮同步前的准备工作（例如旧格式迁移），默认无操作

        Args:
            watermark: 本地水位线
        """

    @abstractmethod
    async def read_remote_timestamp(self) -> Optional[datetime]:
        """远程最后修改时间"""

    @abstractmethod
    async def read_remote_snapshot(self) -> AppData:
        """读取远程快照（远程为空时返回空数据集）"""

    @abstractmethod
    async def write_remote_snapshot(
        self,
        snapshot: AppData,
        expected_version: Optional[datetime],
        force: bool = False
    ) -> Optional[datetime]:
        """
        写入远程快照

        Args:
            snapshot: 本地快照
            expected_version: 预期的远程版本（本地水位线）
            force: 跳过版本检查（冲突解决时选择本地）

        Returns:
            写入后的远程版本时间戳

        Raises:
            VersionConflictError: 远程已被其他设备修改
        """

    async def aclose(self):
        """释放资源"""


class HttpSyncBackend(SyncBackend):
    """基于 httpx.AsyncClient 的后端基类"""

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            base_url: API 根地址
            headers: 默认请求头
            timeout: 超时（秒）
            transport: 自定义传输层（测试时注入 MockTransport / ASGITransport）
        """
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        发送请求并把 HTTP 错误映射为同步错误类型

        Raises:
            NetworkError: 传输失败或未知 HTTP 错误
            ConfigurationError: 401 / 403
            NotFoundError: 404
            VersionConflictError: 409
        """
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{self.name} request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{self.name} request failed: {method} {url}: {e}") from e

        if response.is_success:
            return response

        message = _error_message(response)
        status = response.status_code

        logger.debug(
            "Backend request failed",
            backend=self.name,
            method=method,
            url=url,
            status=status
        )

        if status in (401, 403):
            raise ConfigurationError(f"{self.name} rejected credentials: {message}", status=status)
        if status == 404:
            raise NotFoundError(f"{self.name} resource not found: {url}", status=status)
        if status == 409:
            raise VersionConflictError(f"{self.name} version conflict: {message}", status=status)
        raise NetworkError(f"{self.name} error {status}: {message}", status=status)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError(f"Invalid JSON response: {e}") from e

    async def aclose(self):
        await self.client.aclose()


def _error_message(response: httpx.Response) -> str:
    """从错误响应中提取消息"""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get('message') or body.get('error') or response.reason_phrase)
    return response.reason_phrase or f"HTTP {response.status_code}"
