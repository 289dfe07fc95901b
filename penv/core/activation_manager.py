"""
环境激活模块。

维护"当前激活环境"：home/bin 是一个稳定的符号链接，指向激活环境的 bin 目录；
ActiveState 记录激活的别名。两者的修改都在全局 active.lock 下进行。
"""

from pathlib import Path
from typing import Optional

from penv.core.config_manager import ConfigManager
from penv.core.environment_manager import EnvironmentManager
from penv.core.interfaces import IStateStore
from penv.core.models import ActiveState, Environment
from penv.core.state_store import clear_active
from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_symlink, read_symlink, remove_link
from penv.utils.logger import get_logger

logger = get_logger()


class ActivationError(PenvError):
    """环境激活错误异常。"""
    pass


class ActivationFailedError(ActivationError):
    """切换激活环境失败异常，激活状态保持切换前的值。"""
    pass


class ActivationManager:
    """激活管理器类。"""

    def __init__(
        self,
        config_manager: ConfigManager,
        environment_manager: EnvironmentManager,
        state_store: IStateStore
    ):
        """
        初始化激活管理器。

        参数:
            config_manager: 配置管理器实例
            environment_manager: 环境管理器实例
            state_store: 激活状态存储
        """
        self.config_manager = config_manager
        self.environment_manager = environment_manager
        self.state_store = state_store

    @property
    def bin_link(self) -> Path:
        return self.config_manager.BIN_LINK

    def use(self, alias: str) -> Environment:
        """
        激活指定环境。

        先重建环境的二进制目录（固定版本不在缓存中时失败），
        再原子替换 home/bin 链接，最后写入 ActiveState。
        任一步骤失败时链接和状态都保持切换前的值。

        参数:
            alias: 环境别名

        返回:
            被激活的 Environment

        抛出:
            UnknownAliasError: 别名未注册
            VersionNotInstalledError: 固定版本已不在缓存中
            ActivationFailedError: 切换链接或保存状态失败
        """
        # 与 delete 相同的加锁顺序：environments.lock 先于 active.lock
        with self.environment_manager.index_lock(), self.state_store.lock():
            environment = self.environment_manager.get(alias)
            previous_state = self.state_store.load()
            self.environment_manager.materialize_binaries(environment)

            previous_target = read_symlink(self.bin_link)
            try:
                atomic_symlink(environment.bin_dir, self.bin_link)
                self.state_store.save(ActiveState(active_alias=alias))
            except OSError as e:
                self._restore_link(previous_target)
                raise ActivationFailedError(
                    f"激活环境 {alias} 失败，仍保持 {previous_state.active_alias}: {e}"
                ) from e

        logger.info(f"已激活环境 {alias}（{environment.pinned_version}）")
        return environment

    def _restore_link(self, previous_target: Optional[Path]) -> None:
        """把 home/bin 恢复为切换前的目标。"""
        if previous_target is None:
            remove_link(self.bin_link)
        else:
            atomic_symlink(previous_target, self.bin_link)

    def deactivate(self) -> Optional[str]:
        """
        取消激活：清除 ActiveState 并删除 home/bin 链接。

        返回:
            之前激活的别名，未激活时返回 None
        """
        return clear_active(self.state_store, self.bin_link)

    def current(self) -> Optional[Environment]:
        """
        获取当前激活的环境。

        激活的别名已不在注册表中时视为未激活。

        返回:
            Environment 或 None
        """
        alias = self.state_store.load().active_alias
        if alias is None:
            return None
        environment = self.environment_manager.find(alias)
        if environment is None:
            logger.debug(f"激活状态指向不存在的环境 {alias}")
        return environment
