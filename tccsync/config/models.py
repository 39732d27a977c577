"""
配置数据模型
"""

from dataclasses import asdict, dataclass, field
from typing import Optional


BACKEND_NONE = "none"
BACKEND_GITHUB = "github"
BACKEND_CLOUDFLARE = "cloudflare"


@dataclass
class GitHubConfig:
    """GitHub 后端配置"""
    token: str = ""
    owner: str = ""
    repo: str = ""
    data_path: str = "data/tasks.json"  # 基础路径取其所在目录
    api_base: str = "https://api.github.com"

    def is_complete(self) -> bool:
        """凭证是否完整"""
        return bool(self.token and self.owner and self.repo)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CloudflareConfig:
    """Cloudflare 后端配置"""
    api_url: str = ""
    api_key: Optional[str] = None  # 通过 X-API-Key 请求头发送

    def is_complete(self) -> bool:
        return bool(self.api_url)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncSettings:
    """同步行为配置"""
    debounce_ms: int = 3000  # 静默期（毫秒）
    request_timeout: float = 30.0  # HTTP 超时（秒）


@dataclass
class LoggingConfig:
    """日志配置"""
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    format: str = "text"  # text, json
    file_path: Optional[str] = None


@dataclass
class TccSyncConfig:
    """主配置"""
    state_dir: str
    github: Optional[GitHubConfig] = None
    cloudflare: Optional[CloudflareConfig] = None
    sync: SyncSettings = field(default_factory=lambda: SyncSettings())
    logging: LoggingConfig = field(default_factory=lambda: LoggingConfig())

    def detect_backend(self) -> str:
        """
        判断当前启用的同步后端

        GitHub 凭证完整时优先，其次是配置了 URL 的 Cloudflare，否则为 none。
        """
        if self.github and self.github.is_complete():
            return BACKEND_GITHUB
        if self.cloudflare and self.cloudflare.is_complete():
            return BACKEND_CLOUDFLARE
        return BACKEND_NONE
