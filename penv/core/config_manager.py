"""
配置管理器模块。

提供 penv 主目录布局以及 config.json 配置的加载、保存和验证功能。
"""

import json
import os
import platform
from pathlib import Path
from typing import Any, Optional

from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_save_json
from penv.utils.logger import get_logger
from penv.core.interfaces import IConfigManager

logger = get_logger()

HOME_ENV = "PENUMBRA_PENV_HOME"


class ConfigManagerError(PenvError):
    """配置管理错误异常。"""
    pass


class ConfigValidationError(ConfigManagerError):
    """配置验证错误异常。"""
    pass


class ConfigLoadError(ConfigManagerError):
    """配置加载错误异常。"""
    pass


class ConfigSaveError(ConfigManagerError):
    """配置保存错误异常。"""
    pass


def get_default_home() -> Path:
    """
    获取 penv 主目录路径。

    优先使用 PENUMBRA_PENV_HOME，其次是 $XDG_DATA_HOME/penv，最后是 ~/.local/share/penv。

    返回:
        主目录的 Path 对象
    """
    env_home = os.environ.get(HOME_ENV)
    if env_home:
        return Path(env_home).expanduser()
    data_home = os.environ.get("XDG_DATA_HOME")
    if data_home:
        return Path(data_home).expanduser() / "penv"
    return Path.home() / ".local" / "share" / "penv"


def detect_target_triple() -> str:
    """
    检测当前主机对应的 Rust 目标三元组。

    返回:
        目标三元组，如 x86_64-unknown-linux-gnu
    """
    machine = platform.machine().lower()
    arch = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    system = platform.system()
    if system == "Darwin":
        return f"{arch}-apple-darwin"
    if system == "Windows":
        return f"{arch}-pc-windows-msvc"
    return f"{arch}-unknown-linux-gnu"


class ConfigManager(IConfigManager):
    """
    配置管理器类。

    负责 penv 主目录下各文件和目录的位置，以及 config.json 的加载、保存、验证和访问。
    实现 IConfigManager 抽象接口。
    """

    REQUIRED_FIELDS = {
        "settings": dict,
    }

    SETTINGS_FIELDS = {
        "repository": str,
        "github_api_url": str,
        "target_triple": str,
        "binaries": list,
        "cache_expire_time": int,
        "request_timeout": int,
        "download_retry_count": int,
        "max_download_workers": int,
        "default_pd_join_port": int,
    }

    DEFAULT_SETTINGS = {
        "repository": "penumbra-zone/penumbra",
        "github_api_url": "https://api.github.com",
        "target_triple": "",
        "binaries": ["pcli", "pclientd", "pd"],
        "cache_expire_time": 3600,
        "request_timeout": 30,
        "download_retry_count": 3,
        "max_download_workers": 6,
        "default_pd_join_port": 26657,
    }

    def __init__(self, home: Optional[Path] = None):
        """
        初始化配置管理器。

        参数:
            home: penv 主目录，为 None 时使用 get_default_home()
        """
        self.home = Path(home) if home is not None else get_default_home()
        self.CONFIG_FILE = self.home / "config.json"
        self.RELEASE_CACHE_FILE = self.home / "releases.json"
        self.CACHE_INDEX_FILE = self.home / "cache.json"
        self.CHECKOUT_INDEX_FILE = self.home / "checkouts.json"
        self.ENVIRONMENT_INDEX_FILE = self.home / "environments.json"
        self.ACTIVE_STATE_FILE = self.home / "active.json"
        self.VERSIONS_DIR = self.home / "versions"
        self.CHECKOUTS_DIR = self.home / "checkouts"
        self.ENVIRONMENTS_DIR = self.home / "environments"
        self.LOCKS_DIR = self.home / "locks"
        self.LOG_DIR = self.home / "logs"
        self.BIN_LINK = self.home / "bin"
        self._config: dict[str, Any] = {}

    def ensure_layout(self) -> None:
        """确保主目录及其子目录存在。"""
        for directory in (self.home, self.VERSIONS_DIR, self.CHECKOUTS_DIR,
                          self.ENVIRONMENTS_DIR, self.LOCKS_DIR):
            directory.mkdir(parents=True, exist_ok=True)

    def lock_path(self, name: str) -> Path:
        """
        获取指定名称的锁文件路径。

        参数:
            name: 锁名称（不含扩展名）

        返回:
            锁文件路径
        """
        self.LOCKS_DIR.mkdir(parents=True, exist_ok=True)
        return self.LOCKS_DIR / f"{name}.lock"

    def get_default_config(self) -> dict[str, Any]:
        """
        获取内置默认配置。

        返回:
            默认配置字典
        """
        settings = dict(self.DEFAULT_SETTINGS)
        settings["binaries"] = list(self.DEFAULT_SETTINGS["binaries"])
        return {"settings": settings}

    def load_config(self) -> dict[str, Any]:
        """
        加载配置文件。

        如果配置文件不存在，则创建默认配置文件；文件损坏时记录错误并使用默认配置。

        返回:
            配置字典
        """
        try:
            if not self.CONFIG_FILE.exists():
                logger.info(f"配置文件不存在，创建默认配置: {self.CONFIG_FILE}")
                self._config = self.get_default_config()
                self.save_config()
                return self._config

            logger.debug(f"从文件加载配置: {self.CONFIG_FILE}")
            with open(self.CONFIG_FILE, "r", encoding="utf-8") as f:
                self._config = json.load(f)

            self._ensure_backward_compatibility()
            self.validate_config(self._config)
            logger.debug("配置加载成功")
            return self._config
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.error(f"加载配置文件失败，使用默认配置: {e}")
            self._config = self.get_default_config()
            return self._config
        except ConfigValidationError as e:
            logger.error(f"配置验证失败，使用默认配置: {e}")
            self._config = self.get_default_config()
            return self._config

    def _ensure_backward_compatibility(self) -> None:
        """
        确保配置向后兼容，为旧版本配置补齐新字段。
        """
        if not isinstance(self._config, dict):
            raise ConfigValidationError("配置文件顶层必须是对象")

        settings = self._config.setdefault("settings", {})
        if not isinstance(settings, dict):
            return

        for field, default in self.DEFAULT_SETTINGS.items():
            if field not in settings:
                settings[field] = list(default) if isinstance(default, list) else default

    def save_config(self, config: dict[str, Any] | None = None) -> None:
        """
        保存配置到文件。

        参数:
            config: 要保存的配置字典，如果为 None 则保存当前配置
        """
        try:
            if config is not None:
                self._config = config

            self.validate_config(self._config)

            logger.debug(f"保存配置到 {self.CONFIG_FILE}")
            atomic_save_json(self.CONFIG_FILE, self._config, indent=2)
        except ConfigValidationError as e:
            logger.error(f"配置验证失败，无法保存: {e}")
            raise
        except (IOError, OSError) as e:
            logger.error(f"保存配置失败: {e}")
            raise ConfigSaveError(f"无法保存配置到 {self.CONFIG_FILE}: {e}") from e

    def validate_config(self, config: dict[str, Any]) -> bool:
        """
        验证配置的有效性。

        参数:
            config: 要验证的配置字典

        返回:
            验证通过返回 True

        抛出:
            ConfigValidationError: 配置验证失败时抛出
        """
        for field, expected_type in self.REQUIRED_FIELDS.items():
            if field not in config:
                raise ConfigValidationError(f"缺少必需字段: {field}")
            if not isinstance(config[field], expected_type):
                raise ConfigValidationError(
                    f"字段 '{field}' 必须是 {expected_type.__name__} 类型，"
                    f"实际为 {type(config[field]).__name__}"
                )

        settings = config["settings"]
        for field, expected_type in self.SETTINGS_FIELDS.items():
            if field not in settings:
                raise ConfigValidationError(f"settings 中缺少必需字段: {field}")
            value = settings[field]
            if isinstance(value, bool) or not isinstance(value, expected_type):
                raise ConfigValidationError(
                    f"字段 'settings.{field}' 必须是 {expected_type.__name__} 类型，"
                    f"实际为 {type(value).__name__}"
                )

        if not all(isinstance(b, str) and b for b in settings["binaries"]):
            raise ConfigValidationError("字段 'settings.binaries' 只能包含非空字符串")

        for field in ("download_retry_count", "cache_expire_time"):
            if settings[field] < 0:
                raise ConfigValidationError(f"字段 'settings.{field}' 不能为负数")
        for field in ("max_download_workers", "request_timeout"):
            if settings[field] < 1:
                raise ConfigValidationError(f"字段 'settings.{field}' 必须大于 0")

        logger.debug("配置验证通过")
        return True

    @property
    def config(self) -> dict[str, Any]:
        """
        获取配置字典（延迟加载）。

        返回:
            配置字典
        """
        if not self._config:
            self.load_config()
        return self._config

    def get_config(self) -> dict[str, Any]:
        """获取配置字典。"""
        return self.config

    def get_settings(self) -> dict[str, Any]:
        """获取 settings 配置部分。"""
        return self.config.get("settings", {})

    def set_setting(self, key: str, value: Any) -> None:
        """
        修改单个设置并保存。

        参数:
            key: settings 中的字段名
            value: 新值
        """
        if key not in self.SETTINGS_FIELDS:
            raise ConfigValidationError(f"未知配置项: {key}")
        config = json.loads(json.dumps(self.config))
        config["settings"][key] = value
        self.save_config(config)

    def get_repository(self) -> str:
        """获取发布仓库（owner/name）。"""
        return self.get_settings().get("repository", self.DEFAULT_SETTINGS["repository"])

    def get_github_api_url(self) -> str:
        """获取 GitHub API 根地址。"""
        return self.get_settings().get("github_api_url", self.DEFAULT_SETTINGS["github_api_url"]).rstrip("/")

    def get_target_triple(self) -> str:
        """获取目标平台三元组，未配置时检测当前主机。"""
        return self.get_settings().get("target_triple") or detect_target_triple()

    def get_binaries(self) -> list[str]:
        """获取受管理的二进制名称列表。"""
        return list(self.get_settings().get("binaries", self.DEFAULT_SETTINGS["binaries"]))

    def get_cache_expire_time(self) -> int:
        """获取发布索引磁盘缓存过期时间（秒）。"""
        return self.get_settings().get("cache_expire_time", self.DEFAULT_SETTINGS["cache_expire_time"])

    def get_request_timeout(self) -> int:
        """获取网络请求超时时间（秒）。"""
        return self.get_settings().get("request_timeout", self.DEFAULT_SETTINGS["request_timeout"])

    def get_download_retry_count(self) -> int:
        """获取下载重试次数配置。"""
        return self.get_settings().get("download_retry_count", self.DEFAULT_SETTINGS["download_retry_count"])

    def get_max_download_workers(self) -> int:
        """获取并发下载线程上限。"""
        return self.get_settings().get("max_download_workers", self.DEFAULT_SETTINGS["max_download_workers"])

    def get_default_pd_join_port(self) -> int:
        """获取 pd 加入网络时默认使用的 CometBFT RPC 端口。"""
        return self.get_settings().get("default_pd_join_port", self.DEFAULT_SETTINGS["default_pd_join_port"])

    def reset_to_default(self) -> dict[str, Any]:
        """
        重置配置为内置默认配置。

        返回:
            更新后的配置字典
        """
        self._config = self.get_default_config()
        self.save_config()
        return self._config
