"""
git 检出管理模块。

提供按源地址哈希寻址的 git 工作目录的创建、更新和引用计数功能。
同一个源地址只对应一个检出，所有从该地址创建的环境共享它。
"""

import hashlib
import os
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Optional, List, Dict

from filelock import FileLock

from penv.core.config_manager import ConfigManager
from penv.core.interfaces import IGitClient
from penv.core.models import Checkout, utc_now
from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_save_json, load_json
from penv.utils.logger import get_logger

logger = get_logger()


class CheckoutManagerError(PenvError):
    """检出管理错误异常。"""
    pass


class GitError(CheckoutManagerError):
    """git 命令执行失败异常。"""
    pass


class CheckoutNotFoundError(CheckoutManagerError):
    """检出记录不存在异常。"""
    pass


def content_address(url: str) -> str:
    """
    计算源地址的内容地址。

    参数:
        url: git 源地址

    返回:
        源地址的 sha256 十六进制摘要
    """
    return hashlib.sha256(url.strip().encode("utf-8")).hexdigest()


class GitClient(IGitClient):
    """基于 subprocess 调用 git 命令行的客户端。"""

    def __init__(self, git_executable: str = "git"):
        self.git_executable = git_executable

    def _run(self, args: List[str], operation: str, cwd: Optional[Path] = None) -> str:
        """
        执行 git 命令。

        参数:
            args: git 子命令及参数
            operation: 日志和错误信息中使用的操作描述
            cwd: 工作目录

        返回:
            标准输出

        抛出:
            GitError: git 不存在或返回非零退出码
        """
        cmd = [self.git_executable, *args]
        logger.debug(f"执行 {' '.join(cmd)}（cwd={cwd}）")
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitError(f"未找到 git 可执行文件: {self.git_executable}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise GitError(f"{operation}失败 (退出码 {result.returncode}): {stderr}")
        return result.stdout

    def clone(self, url: str, dest: Path) -> None:
        self._run(["clone", "--", url, str(dest)], operation=f"克隆 {url} ")

    def pull(self, workdir: Path) -> None:
        self._run(["pull", "--ff-only"], operation=f"更新 {workdir} ", cwd=workdir)

    def head_commit(self, workdir: Path) -> str:
        return self._run(["rev-parse", "HEAD"], operation="读取 HEAD ", cwd=workdir).strip()


class CheckoutManager:
    """
    检出管理器类。

    checkouts.json 记录每个检出及引用它的环境别名集合。
    同一检出的克隆与更新由 checkout-<地址>.lock 串行化，索引读改写由 checkouts.lock 串行化。
    """

    def __init__(self, config_manager: ConfigManager, git_client: Optional[IGitClient] = None):
        """
        初始化检出管理器。

        参数:
            config_manager: 配置管理器实例
            git_client: git 客户端，默认使用 GitClient
        """
        self.config_manager = config_manager
        self.git_client = git_client or GitClient()
        self.index_file = config_manager.CHECKOUT_INDEX_FILE
        self.checkouts_dir = config_manager.CHECKOUTS_DIR

    def index_lock(self) -> FileLock:
        return FileLock(str(self.config_manager.lock_path("checkouts")))

    def checkout_lock(self, address: str) -> FileLock:
        return FileLock(str(self.config_manager.lock_path(f"checkout-{address[:16]}")))

    def _load_index(self) -> Dict[str, Checkout]:
        data = load_json(self.index_file, {})
        checkouts = data.get("checkouts", {}) if isinstance(data, dict) else {}
        return {address: Checkout.from_dict(raw) for address, raw in checkouts.items()}

    def _save_index(self, checkouts: Dict[str, Checkout]) -> None:
        atomic_save_json(self.index_file, {
            "checkouts": {address: c.to_dict() for address, c in checkouts.items()},
        })

    def _store(self, checkout: Checkout) -> None:
        """写入检出记录，保留索引中已有的引用集合。"""
        with self.index_lock():
            checkouts = self._load_index()
            previous = checkouts.get(checkout.content_address)
            if previous is not None:
                checkout.referenced_by = sorted(set(previous.referenced_by) | set(checkout.referenced_by))
            checkouts[checkout.content_address] = checkout
            self._save_index(checkouts)

    def get(self, address: str) -> Optional[Checkout]:
        """
        按内容地址获取检出记录。

        参数:
            address: 内容地址

        返回:
            Checkout，不存在返回 None
        """
        return self._load_index().get(address)

    def find(self, url: str) -> Optional[Checkout]:
        """按源地址获取检出记录，工作目录已丢失时返回 None。"""
        checkout = self.get(content_address(url))
        if checkout is None or not checkout.workdir.is_dir():
            return None
        return checkout

    def list(self) -> List[Checkout]:
        """列出全部检出记录。"""
        return sorted(self._load_index().values(), key=lambda c: c.source_url)

    def ensure_checkout(self, url: str) -> Checkout:
        """
        确保源地址有一个可用的检出（幂等）。

        已存在则直接复用；否则克隆到临时目录，成功后 rename 到内容地址目录。

        参数:
            url: git 源地址

        返回:
            Checkout

        抛出:
            GitError: 克隆失败
        """
        url = url.strip()
        address = content_address(url)
        workdir = self.checkouts_dir / address

        with self.checkout_lock(address):
            existing = self.get(address)
            if existing is not None and workdir.is_dir():
                logger.info(f"复用已有检出 {url} -> {workdir}")
                return existing

            if workdir.exists():
                logger.warning(f"检出目录 {workdir} 没有对应记录，将重新克隆")
                shutil.rmtree(workdir)

            self.checkouts_dir.mkdir(parents=True, exist_ok=True)
            staging = self.checkouts_dir / f".{address}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
            logger.info(f"正在克隆 {url}")
            try:
                self.git_client.clone(url, staging)
                commit = self.git_client.head_commit(staging)
                os.rename(staging, workdir)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

            checkout = Checkout(
                source_url=url,
                content_address=address,
                local_workdir_path=str(workdir),
                last_fetched_at=utc_now(),
                resolved_commit=commit,
            )
            self._store(checkout)
            logger.info(f"已检出 {url} @ {commit[:12]} 到 {workdir}")
            return checkout

    def refresh(self, checkout: Checkout) -> Checkout:
        """
        拉取远程更新到已有检出，保留本地构建产物。

        参数:
            checkout: 要更新的检出

        返回:
            更新后的 Checkout（resolved_commit 为新的 HEAD）
        """
        address = checkout.content_address
        with self.checkout_lock(address):
            current = self.get(address)
            if current is None or not current.workdir.is_dir():
                raise CheckoutNotFoundError(f"检出 {checkout.source_url} 不存在，请先执行 penv install {checkout.source_url}")

            logger.info(f"正在更新检出 {current.source_url}")
            self.git_client.pull(current.workdir)
            current.resolved_commit = self.git_client.head_commit(current.workdir)
            current.last_fetched_at = utc_now()
            self._store(current)
            return current

    def add_reference(self, address: str, alias: str) -> Checkout:
        """
        记录环境对检出的引用。

        参数:
            address: 内容地址
            alias: 环境别名
        """
        with self.index_lock():
            checkouts = self._load_index()
            checkout = checkouts.get(address)
            if checkout is None:
                raise CheckoutNotFoundError(f"检出 {address} 不存在")
            if alias not in checkout.referenced_by:
                checkout.referenced_by.append(alias)
            self._save_index(checkouts)
            return checkout

    def release_reference(self, address: str, alias: str, prune: bool = True) -> bool:
        """
        移除环境对检出的引用；最后一个引用被移除时删除检出。

        参数:
            address: 内容地址
            alias: 环境别名
            prune: 为 False 时只移除引用，保留检出

        返回:
            检出被删除返回 True
        """
        with self.checkout_lock(address):
            with self.index_lock():
                checkouts = self._load_index()
                checkout = checkouts.get(address)
                if checkout is None:
                    return False
                checkout.referenced_by = [a for a in checkout.referenced_by if a != alias]
                if checkout.referenced_by or not prune:
                    self._save_index(checkouts)
                    logger.debug(f"检出 {checkout.source_url} 仍被 {checkout.referenced_by} 引用")
                    return False
                del checkouts[address]
                self._save_index(checkouts)

            if checkout.workdir.exists():
                shutil.rmtree(checkout.workdir)
            logger.info(f"已删除不再被引用的检出 {checkout.source_url}")
            return True
