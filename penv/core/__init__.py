"""
penv 核心模块。

提供发布索引、版本解析、版本缓存、git 检出、环境注册、环境激活和 shell 钩子功能。
"""

from .models import Release, ReleaseAsset, CacheEntry, Checkout, Environment, ActiveState
from .interfaces import IConfigManager, IReleaseSource, IGitClient, IStateStore
from .config_manager import ConfigManager, ConfigManagerError, ConfigValidationError, ConfigLoadError, ConfigSaveError
from .version_utils import VersionResolveError, InvalidRequirementError, VersionNotFoundError, parse_requirement, resolve
from .remote_fetcher import RemoteFetcher, RemoteFetcherError, FetchError, NoReleasesError
from .cache_manager import CacheManager, CacheManagerError, VersionNotInstalledError
from .download_manager import DownloadManager, DownloadManagerError, ChecksumMismatchError, ExtractionError, InstallationError
from .checkout_manager import CheckoutManager, CheckoutManagerError, GitClient, GitError
from .state_store import FileStateStore, StateStoreError
from .environment_manager import EnvironmentManager, EnvironmentManagerError, EnvironmentOptions, DuplicateAliasError, UnknownAliasError
from .activation_manager import ActivationManager, ActivationError, ActivationFailedError
from .env_manager import EnvManager
from .version_manager import VersionManager, VersionManagerError, VersionInUseError

__all__ = [
    "Release", "ReleaseAsset", "CacheEntry", "Checkout", "Environment", "ActiveState",
    "IConfigManager", "IReleaseSource", "IGitClient", "IStateStore",
    "ConfigManager", "ConfigManagerError", "ConfigValidationError", "ConfigLoadError", "ConfigSaveError",
    "VersionResolveError", "InvalidRequirementError", "VersionNotFoundError", "parse_requirement", "resolve",
    "RemoteFetcher", "RemoteFetcherError", "FetchError", "NoReleasesError",
    "CacheManager", "CacheManagerError", "VersionNotInstalledError",
    "DownloadManager", "DownloadManagerError", "ChecksumMismatchError", "ExtractionError", "InstallationError",
    "CheckoutManager", "CheckoutManagerError", "GitClient", "GitError",
    "FileStateStore", "StateStoreError",
    "EnvironmentManager", "EnvironmentManagerError", "EnvironmentOptions", "DuplicateAliasError", "UnknownAliasError",
    "ActivationManager", "ActivationError", "ActivationFailedError",
    "EnvManager",
    "VersionManager", "VersionManagerError", "VersionInUseError",
]
