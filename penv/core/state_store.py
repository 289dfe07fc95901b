"""
激活状态存储模块。

ActiveState 持久化在 active.json 中，所有修改都必须持有全局锁 active.lock。
"""

from pathlib import Path
from typing import Optional

from filelock import FileLock

from penv.core.interfaces import IStateStore
from penv.core.models import ActiveState
from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_save_json, load_json, remove_link
from penv.utils.logger import get_logger

logger = get_logger()


class StateStoreError(PenvError):
    """激活状态文件读写错误异常。"""
    pass


class FileStateStore(IStateStore):
    """基于 JSON 文件和 filelock 的激活状态存储。"""

    def __init__(self, state_file: Path, lock_file: Path):
        """
        初始化激活状态存储。

        参数:
            state_file: active.json 路径
            lock_file: 全局锁文件路径
        """
        self.state_file = state_file
        self._lock = FileLock(str(lock_file))

    def load(self) -> ActiveState:
        try:
            data = load_json(self.state_file, {})
        except (OSError, ValueError) as e:
            raise StateStoreError(f"无法读取激活状态 {self.state_file}: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError(f"激活状态文件格式错误: {self.state_file}")
        return ActiveState.from_dict(data)

    def save(self, state: ActiveState) -> None:
        atomic_save_json(self.state_file, state.to_dict())
        logger.debug(f"激活状态已保存: {state.active_alias}")

    def lock(self) -> FileLock:
        return self._lock


def clear_active(store: IStateStore, bin_link: Path, only_alias: Optional[str] = None) -> Optional[str]:
    """
    清除激活状态并删除当前二进制链接。

    参数:
        store: 激活状态存储
        bin_link: 当前二进制目录的稳定链接位置
        only_alias: 只有当激活的正是该别名时才清除

    返回:
        被清除的别名；未清除任何内容时返回 None
    """
    with store.lock():
        previous = store.load().active_alias
        if only_alias is not None and previous != only_alias:
            return None
        if previous is not None:
            store.save(ActiveState())
        removed = remove_link(bin_link)
        if previous is not None or removed:
            logger.info(f"已取消激活环境 {previous}")
        return previous
