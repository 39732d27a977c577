"""
后端配置读写

每个后端的配置保存为状态目录下的一个小 JSON 文件:
- mytcc2_github_config.json
- mytcc2_cloudflare_config.json
"""

import json
import os
from dataclasses import fields
from pathlib import Path
from typing import Optional, Type
import structlog

from tccsync.config.models import (
    CloudflareConfig,
    GitHubConfig,
    LoggingConfig,
    SyncSettings,
    TccSyncConfig,
)
from tccsync.errors import PersistenceError

logger = structlog.get_logger()

GITHUB_CONFIG_KEY = "mytcc2_github_config"
CLOUDFLARE_CONFIG_KEY = "mytcc2_cloudflare_config"

DEFAULT_STATE_DIR = "~/.tccsync"


class ConfigParser:
    """后端配置解析器"""

    def __init__(self, state_dir: Optional[str] = None):
        """
        初始化配置解析器

        Args:
            state_dir: 状态目录（默认 ~/.tccsync，可用 TCCSYNC_STATE_DIR 覆盖）
        """
        state_dir = state_dir or os.environ.get("TCCSYNC_STATE_DIR") or DEFAULT_STATE_DIR
        self.state_dir = Path(state_dir).expanduser()

    def parse(
        self,
        sync: Optional[SyncSettings] = None,
        logging_config: Optional[LoggingConfig] = None
    ) -> TccSyncConfig:
        """
        读取所有后端配置

        Returns:
            TccSyncConfig 对象
        """
        config = TccSyncConfig(
            state_dir=str(self.state_dir),
            github=self.load_github(),
            cloudflare=self.load_cloudflare(),
            sync=sync or SyncSettings(),
            logging=logging_config or LoggingConfig(),
        )

        logger.info(
            "Configuration parsed",
            state_dir=str(self.state_dir),
            backend=config.detect_backend()
        )
        return config

    def load_github(self) -> Optional[GitHubConfig]:
        """读取 GitHub 配置"""
        return self._load(GITHUB_CONFIG_KEY, GitHubConfig)

    def load_cloudflare(self) -> Optional[CloudflareConfig]:
        """读取 Cloudflare 配置"""
        return self._load(CLOUDFLARE_CONFIG_KEY, CloudflareConfig)

    def save_github(self, config: GitHubConfig):
        self._save(GITHUB_CONFIG_KEY, config.to_dict())

    def save_cloudflare(self, config: CloudflareConfig):
        self._save(CLOUDFLARE_CONFIG_KEY, config.to_dict())

    def delete_github(self):
        self._delete(GITHUB_CONFIG_KEY)

    def delete_cloudflare(self):
        self._delete(CLOUDFLARE_CONFIG_KEY)

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{key}.json"

    def _load(self, key: str, model: Type):
        """
        读取一个配置文件

        文件损坏时记录警告并视为未配置。
        """
        path = self._path(key)
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load backend config", key=key, error=str(e))
            return None

        if not isinstance(raw, dict):
            logger.warning("Invalid backend config format", key=key)
            return None

        # 兼容 camelCase 键名（dataPath, apiUrl, apiKey）
        aliases = {'dataPath': 'data_path', 'apiUrl': 'api_url', 'apiKey': 'api_key', 'apiBase': 'api_base'}
        known = {f.name for f in fields(model)}
        values = {}
        for name, value in raw.items():
            name = aliases.get(name, name)
            if name in known:
                values[name] = value

        return model(**values)

    def _save(self, key: str, data: dict):
        """原子写入配置文件"""
        path = self._path(key)
        temp_file = path.with_suffix('.tmp')
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_file, path)
        except OSError as e:
            logger.error("Failed to save backend config", key=key, error=str(e))
            raise PersistenceError(f"Failed to save config {key}: {e}") from e

        logger.info("Backend config saved", key=key)

    def _delete(self, key: str):
        path = self._path(key)
        if path.exists():
            path.unlink()
            logger.info("Backend config removed", key=key)
