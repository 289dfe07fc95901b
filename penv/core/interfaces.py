"""
核心模块抽象接口定义。

定义配置、发布源、git 客户端和激活状态存储的抽象接口，测试可以注入各自的替身实现。
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Optional, List, Any, Callable

from penv.core.models import ActiveState, Release


class IConfigManager(ABC):
    """配置管理器抽象接口。"""

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        """获取配置字典。"""
        pass

    @abstractmethod
    def save_config(self, config: dict[str, Any] | None = None) -> None:
        """保存配置到文件。"""
        pass

    @abstractmethod
    def get_settings(self) -> dict[str, Any]:
        """获取 settings 配置部分。"""
        pass

    @abstractmethod
    def get_binaries(self) -> list[str]:
        """获取受管理的二进制名称列表。"""
        pass

    @abstractmethod
    def get_target_triple(self) -> str:
        """获取目标平台三元组。"""
        pass

    @abstractmethod
    def lock_path(self, name: str) -> Path:
        """获取指定名称的锁文件路径。"""
        pass


class IReleaseSource(ABC):
    """发布源抽象接口。"""

    @abstractmethod
    def list_releases(self, use_cache: bool = False) -> List[Release]:
        """列出全部已发布版本。"""
        pass

    @abstractmethod
    def fetch_bytes(self, url: str) -> bytes:
        """获取小文件（如校验和文件）的完整内容。"""
        pass

    @abstractmethod
    def download_file(
        self,
        url: str,
        dest: Path,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> str:
        """流式下载文件到 dest，返回内容的 sha256 摘要。"""
        pass


class IGitClient(ABC):
    """git 客户端抽象接口。"""

    @abstractmethod
    def clone(self, url: str, dest: Path) -> None:
        """克隆仓库到 dest。"""
        pass

    @abstractmethod
    def pull(self, workdir: Path) -> None:
        """拉取远程更新并快进当前分支。"""
        pass

    @abstractmethod
    def head_commit(self, workdir: Path) -> str:
        """获取工作目录当前 HEAD 的提交哈希。"""
        pass


class IStateStore(ABC):
    """激活状态存储抽象接口。"""

    @abstractmethod
    def load(self) -> ActiveState:
        """读取当前激活状态。"""
        pass

    @abstractmethod
    def save(self, state: ActiveState) -> None:
        """原子保存激活状态。"""
        pass

    @abstractmethod
    def lock(self) -> AbstractContextManager:
        """返回保护激活状态修改的全局锁。"""
        pass


ProgressCallback = Callable[[str, int, int], None]
StatusCallback = Callable[[str], None]
