"""
版本管理器模块。

提供发布查询、版本安装与卸载、环境管理、环境激活和 shell 钩子的统一入口。
"""

import os
from typing import Optional, List, Dict, Any, Tuple, Union

from penv.core.activation_manager import ActivationManager
from penv.core.cache_manager import CacheManager
from penv.core.checkout_manager import CheckoutManager
from penv.core.config_manager import ConfigManager
from penv.core.download_manager import DownloadManager
from penv.core.env_manager import EnvManager, MARKER_VAR
from penv.core.environment_manager import EnvironmentManager, EnvironmentOptions
from penv.core.interfaces import IReleaseSource, IGitClient, IStateStore, ProgressCallback, StatusCallback
from penv.core.models import CacheEntry, Checkout, Environment, Release
from penv.core.remote_fetcher import RemoteFetcher, NoReleasesError
from penv.core.state_store import FileStateStore
from penv.core.version_utils import Requirement, parse_requirement, parse_version, resolve
from penv.utils.errors import PenvError
from penv.utils.input_validator import InputValidator
from penv.utils.logger import get_logger

logger = get_logger()


class VersionManagerError(PenvError):
    """版本管理错误异常。"""
    pass


class VersionInUseError(VersionManagerError):
    """版本仍被环境固定使用异常。"""
    pass


class VersionManager:
    """
    版本管理器类。

    本类作为协调者，持有每个组件的唯一实例并把具体工作委托给它们。
    发布源、git 客户端和激活状态存储可以注入替身实现。
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        release_source: Optional[IReleaseSource] = None,
        git_client: Optional[IGitClient] = None,
        state_store: Optional[IStateStore] = None
    ):
        """
        初始化版本管理器。

        参数:
            config_manager: 配置管理器实例
            release_source: 发布源，默认使用 RemoteFetcher
            git_client: git 客户端，默认使用 GitClient
            state_store: 激活状态存储，默认使用 active.json
        """
        self.config_manager = config_manager
        self.config_manager.ensure_layout()
        self.release_source = release_source or RemoteFetcher(config_manager)
        self.cache_manager = CacheManager(config_manager)
        self.download_manager = DownloadManager(config_manager, self.cache_manager, self.release_source)
        self.checkout_manager = CheckoutManager(config_manager, git_client)
        self.state_store = state_store or FileStateStore(
            config_manager.ACTIVE_STATE_FILE, config_manager.lock_path("active")
        )
        self.environment_manager = EnvironmentManager(
            config_manager, self.cache_manager, self.checkout_manager, self.state_store
        )
        self.activation_manager = ActivationManager(
            config_manager, self.environment_manager, self.state_store
        )
        self.env_manager = EnvManager()

    # ---- 发布索引 ----

    def installable_releases(self, use_cache: bool = False) -> List[Release]:
        """
        获取为当前平台提供了全部受管理二进制的发布。

        参数:
            use_cache: 是否允许使用磁盘缓存

        返回:
            Release 列表，按版本号降序排列
        """
        target = self.config_manager.get_target_triple()
        binaries = self.config_manager.get_binaries()
        releases = self.release_source.list_releases(use_cache=use_cache)
        supported = [
            r for r in releases
            if r.supports(binaries, target) and parse_version(r.version) is not None
        ]
        skipped = len(releases) - len(supported)
        if skipped:
            logger.debug(f"{skipped} 个发布缺少 {target} 平台的二进制或版本号无法解析，已跳过")
        # 发布源不保证顺序
        return sorted(supported, key=lambda r: parse_version(r.version), reverse=True)

    def available_releases(
        self,
        requirement_text: Optional[str] = None,
        use_cache: bool = False
    ) -> List[Tuple[Release, bool]]:
        """
        列出可安装的发布及其安装状态。

        参数:
            requirement_text: 可选的版本需求
            use_cache: 是否允许使用磁盘缓存

        返回:
            (Release, 是否已安装) 列表，按版本号降序排列
        """
        releases = self.installable_releases(use_cache=use_cache)
        if requirement_text:
            requirement = parse_requirement(requirement_text)
            releases = [r for r in releases if self._release_matches(requirement, r)]
        installed = set(self.cache_manager.installed_versions())
        return [(r, r.version in installed) for r in releases]

    @staticmethod
    def _release_matches(requirement: Requirement, release: Release) -> bool:
        version = parse_version(release.version)
        return version is not None and requirement.matches(version)

    def resolve_release(self, requirement: Requirement) -> Release:
        """
        在发布索引中解析需求。

        参数:
            requirement: 版本需求（非 git）

        返回:
            满足需求的最大版本的 Release

        抛出:
            NoReleasesError: 发布索引为空
            VersionNotFoundError: 没有发布满足需求
        """
        releases = self.installable_releases()
        if not releases:
            raise NoReleasesError(
                f"{self.config_manager.get_repository()} 没有为 "
                f"{self.config_manager.get_target_triple()} 提供可安装的发布"
            )
        by_version = {r.version: r for r in releases}
        return by_version[resolve(requirement, by_version)]

    # ---- 版本缓存 ----

    def install(
        self,
        requirement_text: str,
        progress_callback: Optional[ProgressCallback] = None,
        status_callback: Optional[StatusCallback] = None
    ) -> Union[CacheEntry, Checkout]:
        """
        安装满足需求的版本；git 地址则确保对应的检出存在。

        参数:
            requirement_text: 版本需求或 git 源地址
            progress_callback: 下载进度回调
            status_callback: 状态消息回调

        返回:
            CacheEntry 或 Checkout
        """
        requirement = parse_requirement(requirement_text)
        if requirement.is_git:
            if status_callback:
                status_callback(f"正在准备 {requirement.text} 的检出...")
            return self.checkout_manager.ensure_checkout(requirement.text)

        release = self.resolve_release(requirement)
        logger.info(f"需求 '{requirement}' 解析为 {release.version}")
        return self.download_manager.install(release, progress_callback, status_callback)

    def list_installed(self, requirement_text: Optional[str] = None) -> List[CacheEntry]:
        """
        列出已安装版本。

        参数:
            requirement_text: 可选的版本需求

        返回:
            CacheEntry 列表，按版本号降序排列
        """
        requirement = parse_requirement(requirement_text) if requirement_text else None
        return self.cache_manager.list(requirement)

    def uninstall(self, version: str, force: bool = False) -> CacheEntry:
        """
        卸载指定版本。

        参数:
            version: 版本号
            force: 即使有环境固定在该版本上也卸载

        返回:
            被删除的 CacheEntry

        抛出:
            VersionInUseError: 版本被环境固定且未指定 force
        """
        version = InputValidator.validate_version_string(version)
        # 检查与删除之间不允许新环境固定到该版本
        with self.environment_manager.index_lock():
            pinned_by = self.environment_manager.pinned_by(version)
            if pinned_by and not force:
                raise VersionInUseError(
                    f"版本 {version} 正被环境 {', '.join(pinned_by)} 使用，如需卸载请加 --force"
                )
            if pinned_by:
                logger.warning(f"强制卸载版本 {version}，环境 {', '.join(pinned_by)} 将无法激活")
            return self.cache_manager.remove(version)

    def reset_cache(self, force: bool = False) -> List[str]:
        """
        清空版本缓存。

        参数:
            force: 即使有环境固定在已缓存版本上也清空

        返回:
            被删除的版本号列表
        """
        with self.environment_manager.index_lock():
            installed = set(self.cache_manager.installed_versions())
            in_use = sorted({
                env.alias for env in self.environment_manager.list()
                if env.pinned_version in installed
            })
            if in_use and not force:
                raise VersionInUseError(
                    f"环境 {', '.join(in_use)} 正在使用已缓存的版本，如需清空请加 --force"
                )
            return self.cache_manager.reset()

    # ---- 环境 ----

    def create_environment(
        self,
        alias: str,
        requirement_text: str,
        grpc_url: str,
        options: Optional[EnvironmentOptions] = None
    ) -> Environment:
        return self.environment_manager.create(alias, requirement_text, grpc_url, options)

    def list_environments(self) -> List[Environment]:
        return self.environment_manager.list()

    def describe_environment(self, alias: str) -> Dict[str, Any]:
        """
        获取环境的详细描述，包含是否处于激活状态。

        参数:
            alias: 环境别名

        返回:
            描述字典
        """
        environment = self.environment_manager.get(alias)
        info = self.environment_manager.describe(environment)
        info["active"] = self.state_store.load().active_alias == alias
        return info

    def upgrade_environment(self, alias: str) -> Tuple[Environment, Optional[str]]:
        """
        升级环境。

        返回:
            (升级后的环境, 升级前的固定版本)；未升级时第二项为 None
        """
        previous = self.environment_manager.get(alias).pinned_version
        environment = self.environment_manager.upgrade(alias)
        changed = previous if environment.pinned_version != previous else None
        return environment, changed

    def reset_environment(
        self,
        alias: str,
        leave_client_state: bool = False,
        leave_node_state: bool = False
    ) -> List[str]:
        """
        重置环境的客户端和节点状态。

        返回:
            被删除的路径列表
        """
        removed = self.environment_manager.reset(alias, leave_client_state, leave_node_state)
        return [str(path) for path in removed]

    def delete_environment(self, alias: str) -> Environment:
        return self.environment_manager.delete(alias)

    # ---- 激活 ----

    def use(self, alias: str) -> Environment:
        return self.activation_manager.use(alias)

    def deactivate(self) -> Optional[str]:
        return self.activation_manager.deactivate()

    def current_environment(self) -> Optional[Environment]:
        return self.activation_manager.current()

    # ---- shell 钩子 ----

    def hook_env(self, shell: str, marker: Optional[str] = None) -> str:
        """
        生成 shell 提示符钩子需要 eval 的命令。

        参数:
            shell: 目标 shell
            marker: shell 当前导出的激活标记，默认读取进程环境变量

        返回:
            shell 命令文本；状态未变化时为空字符串
        """
        if marker is None:
            marker = os.environ.get(MARKER_VAR)
        changes = self.env_manager.compute_changes(marker, self.current_environment())
        return self.env_manager.render(changes, shell)

    def hook_script(self, shell: str, command: List[str]) -> str:
        """
        生成安装到 shell 配置中的钩子脚本。

        参数:
            shell: 目标 shell
            command: 调用 penv 的命令行

        返回:
            钩子脚本文本
        """
        return self.env_manager.hook_script(shell, command, self.config_manager.BIN_LINK)
