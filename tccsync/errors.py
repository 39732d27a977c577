"""
同步错误类型

分类:
- ConfigurationError: 后端凭证缺失或无效（跳过，不重试）
- NetworkError: 传输失败（下次触发时重试）
- VersionConflictError: 乐观并发检查失败（交给冲突解决器）
- NotFoundError: 远程尚无数据（驱动首次推送）
- ValidationError: 远程数据格式错误 / 非法的本地更新
- ConflictError: 没有待解决的冲突
- PersistenceError: 本地存储写入失败（直接抛给调用者）
"""

from typing import Optional


class SyncError(Exception):
    """同步错误基类"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ConfigurationError(SyncError):
    """后端配置缺失或无效"""


class NetworkError(SyncError):
    """网络传输失败"""


class VersionConflictError(SyncError):
    """远程版本与预期不一致"""


class NotFoundError(SyncError):
    """远程资源不存在"""


class ValidationError(SyncError):
    """数据格式或字段校验失败"""


class ConflictError(SyncError):
    """冲突状态错误（例如没有待解决的冲突）"""


class PersistenceError(Exception):
    """本地持久化失败，编辑没有被持久保存"""
