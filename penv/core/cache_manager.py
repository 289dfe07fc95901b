"""
版本缓存管理模块。

提供已安装版本索引（cache.json）的读取、追加、校验、卸载和重置功能。
索引中的条目只有在全部二进制都通过校验后才会写入。
"""

import shutil
from pathlib import Path
from typing import Optional, List, Dict

from filelock import FileLock

from penv.core.config_manager import ConfigManager
from penv.core.models import CacheEntry
from penv.core.version_utils import Requirement, matching_versions, sort_versions_desc
from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_save_json, load_json, sha256_file
from penv.utils.logger import get_logger

logger = get_logger()

INDEX_SCHEMA_VERSION = 1
STAGING_PREFIX = ".staging-"


class CacheManagerError(PenvError):
    """版本缓存错误异常。"""
    pass


class VersionNotInstalledError(CacheManagerError):
    """版本未安装异常，需要先执行 install。"""
    pass


class CacheIndexError(CacheManagerError):
    """缓存索引文件损坏异常。"""
    pass


class CacheManager:
    """
    版本缓存管理器类。

    索引文件的读改写由 cache.lock 串行化；同一版本的安装与卸载由
    install-<version>.lock 串行化，不同版本之间互不阻塞。
    """

    def __init__(self, config_manager: ConfigManager):
        """
        初始化版本缓存管理器。

        参数:
            config_manager: 配置管理器实例
        """
        self.config_manager = config_manager
        self.index_file = config_manager.CACHE_INDEX_FILE
        self.versions_dir = config_manager.VERSIONS_DIR

    def index_lock(self) -> FileLock:
        """返回保护索引读改写的文件锁。"""
        return FileLock(str(self.config_manager.lock_path("cache")))

    def version_lock(self, version: str) -> FileLock:
        """
        返回指定版本的安装锁。

        参数:
            version: 版本号
        """
        return FileLock(str(self.config_manager.lock_path(f"install-{version}")))

    def version_dir(self, version: str) -> Path:
        """获取版本的最终安装目录。"""
        return self.versions_dir / version

    def _load_index(self) -> Dict[str, CacheEntry]:
        """
        读取缓存索引。

        返回:
            版本号到 CacheEntry 的映射

        抛出:
            CacheIndexError: 索引文件无法解析
        """
        try:
            data = load_json(self.index_file, {})
        except (OSError, ValueError) as e:
            raise CacheIndexError(f"无法读取缓存索引 {self.index_file}: {e}") from e

        versions = data.get("versions", {}) if isinstance(data, dict) else {}
        try:
            return {v: CacheEntry.from_dict(raw) for v, raw in versions.items()}
        except (KeyError, TypeError) as e:
            raise CacheIndexError(f"缓存索引 {self.index_file} 格式错误: {e}") from e

    def _save_index(self, entries: Dict[str, CacheEntry]) -> None:
        """原子保存缓存索引。"""
        atomic_save_json(self.index_file, {
            "schema_version": INDEX_SCHEMA_VERSION,
            "versions": {v: entry.to_dict() for v, entry in entries.items()},
        })

    def get(self, version: str) -> Optional[CacheEntry]:
        """
        获取指定版本的缓存条目。

        参数:
            version: 版本号

        返回:
            CacheEntry，未安装返回 None
        """
        return self._load_index().get(version)

    def installed_versions(self) -> List[str]:
        """获取全部已安装版本号，按降序排列。"""
        return sort_versions_desc(self._load_index().keys())

    def list(self, requirement: Optional[Requirement] = None) -> List[CacheEntry]:
        """
        列出已安装版本。

        参数:
            requirement: 可选的版本需求，只返回满足需求的条目

        返回:
            CacheEntry 列表，按版本号降序排列
        """
        entries = self._load_index()
        if requirement is None:
            versions = sort_versions_desc(entries.keys())
        else:
            versions = matching_versions(requirement, entries.keys())
        return [entries[v] for v in versions]

    def verify(self, entry: CacheEntry) -> bool:
        """
        校验缓存条目中每个二进制的磁盘摘要是否与安装时记录的一致。

        参数:
            entry: 缓存条目

        返回:
            全部一致返回 True
        """
        for binary in self.config_manager.get_binaries():
            path = entry.artifact_path(binary)
            expected = entry.digests.get(binary)
            if path is None or expected is None or not path.is_file():
                logger.warning(f"版本 {entry.version} 缺少二进制 {binary}")
                return False
            actual = sha256_file(path)
            if actual != expected:
                logger.warning(f"版本 {entry.version} 的 {binary} 摘要不一致: 期望 {expected}，实际 {actual}")
                return False
        return True

    def is_installed(self, version: str, verify: bool = False) -> bool:
        """
        判断版本是否已安装。

        参数:
            version: 版本号
            verify: 是否重新计算摘要

        返回:
            已安装（且在 verify 时校验通过）返回 True
        """
        entry = self.get(version)
        if entry is None:
            return False
        if verify:
            return self.verify(entry)
        return not self._missing_binaries(entry)

    def _missing_binaries(self, entry: CacheEntry) -> List[str]:
        """返回条目中磁盘上已不存在的二进制名称。"""
        missing = []
        for binary in self.config_manager.get_binaries():
            path = entry.artifact_path(binary)
            if path is None or not path.is_file():
                missing.append(binary)
        return missing

    def require(self, version: str) -> CacheEntry:
        """
        获取缓存条目，并确认全部二进制仍在磁盘上。

        参数:
            version: 版本号

        返回:
            CacheEntry

        抛出:
            VersionNotInstalledError: 未安装或二进制缺失
        """
        entry = self.get(version)
        if entry is None:
            raise VersionNotInstalledError(f"版本 {version} 未安装，请先执行 penv install {version}")
        missing = self._missing_binaries(entry)
        if missing:
            raise VersionNotInstalledError(
                f"版本 {version} 缺少二进制 {', '.join(missing)}，请重新执行 penv install {version}"
            )
        return entry

    def add_entry(self, entry: CacheEntry) -> None:
        """
        追加（或替换）缓存条目。

        参数:
            entry: 已通过校验的缓存条目
        """
        with self.index_lock():
            entries = self._load_index()
            entries[entry.version] = entry
            self._save_index(entries)
        logger.info(f"缓存索引已记录版本 {entry.version}")

    def _drop_entry(self, version: str) -> Optional[CacheEntry]:
        """从索引中删除条目并返回它。"""
        with self.index_lock():
            entries = self._load_index()
            entry = entries.pop(version, None)
            if entry is not None:
                self._save_index(entries)
        return entry

    def remove(self, version: str) -> CacheEntry:
        """
        卸载指定版本：先删除索引条目，再删除安装目录。

        参数:
            version: 版本号

        返回:
            被删除的 CacheEntry

        抛出:
            VersionNotInstalledError: 版本未安装
        """
        with self.version_lock(version):
            entry = self._drop_entry(version)
            if entry is None:
                raise VersionNotInstalledError(f"版本 {version} 未安装")
            root = Path(entry.root_dir) if entry.root_dir else self.version_dir(version)
            if root.exists():
                shutil.rmtree(root)
            logger.info(f"已卸载版本 {version}，删除 {root}")
            return entry

    def discard_corrupt(self, entry: CacheEntry) -> None:
        """
        丢弃校验失败的条目，调用方需持有该版本的安装锁。

        参数:
            entry: 校验失败的缓存条目
        """
        logger.warning(f"版本 {entry.version} 的缓存条目校验失败，将重新安装")
        self._drop_entry(entry.version)
        root = Path(entry.root_dir) if entry.root_dir else self.version_dir(entry.version)
        if root.exists():
            shutil.rmtree(root)

    def reset(self) -> List[str]:
        """
        清空缓存：删除全部条目和安装目录。

        每个版本都在自己的安装锁下删除；正在进行的安装使用的临时目录保持不动。

        返回:
            被删除的版本号列表
        """
        removed = []
        for version in self.installed_versions():
            try:
                self.remove(version)
            except VersionNotInstalledError:
                logger.debug(f"版本 {version} 已被其他进程卸载")
                continue
            removed.append(version)

        if self.versions_dir.exists():
            for leftover in self.versions_dir.iterdir():
                if leftover.name.startswith(STAGING_PREFIX):
                    continue
                with self.version_lock(leftover.name):
                    if leftover.is_dir() and self.get(leftover.name) is None:
                        logger.warning(f"删除未登记的残留目录 {leftover}")
                        shutil.rmtree(leftover)

        logger.info(f"已清空版本缓存，共删除 {len(removed)} 个版本")
        return removed
