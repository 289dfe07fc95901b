"""
下载管理模块。

提供发布版本的并发下载、校验、解压和原子安装功能。

安装过程是一个两阶段事务：
    Staging：每个二进制的压缩包和校验和文件并发下载到进程独占的临时目录
    Verified：全部压缩包摘要与校验和文件一致，二进制已解压
    Committed：临时目录被 rename 为最终版本目录，缓存索引追加条目
任何阶段失败都会进入 Aborted，临时目录被整体删除，缓存索引保持不变。
"""

import os
import shutil
import tarfile
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict

from penv.core.cache_manager import CacheManager, STAGING_PREFIX
from penv.core.config_manager import ConfigManager
from penv.core.interfaces import IReleaseSource, ProgressCallback, StatusCallback
from penv.core.models import CacheEntry, Release, ReleaseAsset, utc_now
from penv.core.remote_fetcher import parse_checksum
from penv.utils.errors import PenvError
from penv.utils.file_utils import extract_member, make_executable, sha256_file
from penv.utils.logger import get_logger

logger = get_logger()


class DownloadManagerError(PenvError):
    """下载管理错误异常。"""
    pass


class ChecksumMismatchError(DownloadManagerError):
    """压缩包摘要与发布的校验和不一致异常。"""
    pass


class ExtractionError(DownloadManagerError):
    """解压错误异常。"""
    pass


class InstallationError(DownloadManagerError):
    """安装错误异常。"""
    pass


class InstallState(Enum):
    """安装事务状态。"""

    STAGING = "staging"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class StagedBinary:
    """已下载、校验并解压到临时目录的单个二进制。"""

    binary: str
    path: Path
    digest: str
    archive_digest: str


class InstallTransaction:
    """
    单个版本的安装事务。

    临时目录与最终目录位于同一文件系统（都在 versions/ 下），保证提交时的 rename 是原子的。
    """

    def __init__(self, version: str, versions_dir: Path):
        """
        初始化安装事务并创建临时目录。

        参数:
            version: 要安装的版本号
            versions_dir: 版本目录根路径
        """
        versions_dir.mkdir(parents=True, exist_ok=True)
        self.version = version
        self.state = InstallState.STAGING
        self.staging_dir = Path(tempfile.mkdtemp(
            prefix=f"{STAGING_PREFIX}{version}-{os.getpid()}-", dir=versions_dir
        ))
        self.staged: Dict[str, StagedBinary] = {}
        logger.debug(f"创建安装临时目录 {self.staging_dir}")

    @property
    def archives_dir(self) -> Path:
        return self.staging_dir / "archives"

    @property
    def bin_dir(self) -> Path:
        return self.staging_dir / "bin"

    def record(self, staged: StagedBinary) -> None:
        """记录一个已完成的二进制。"""
        if self.state is not InstallState.STAGING:
            raise InstallationError(f"安装事务处于 {self.state.value} 状态，无法记录 {staged.binary}")
        self.staged[staged.binary] = staged

    def mark_verified(self, binaries: List[str]) -> None:
        """
        确认全部二进制都已就绪，进入 Verified 状态。

        参数:
            binaries: 必须存在的二进制名称
        """
        missing = [b for b in binaries if b not in self.staged]
        if missing:
            raise InstallationError(f"版本 {self.version} 缺少二进制: {', '.join(missing)}")
        self.state = InstallState.VERIFIED

    def commit(self, final_dir: Path) -> Dict[str, Path]:
        """
        把临时目录原子地移动到最终目录。

        参数:
            final_dir: 最终版本目录

        返回:
            二进制名称到最终路径的映射
        """
        if self.state is not InstallState.VERIFIED:
            raise InstallationError(f"安装事务处于 {self.state.value} 状态，无法提交")

        shutil.rmtree(self.archives_dir, ignore_errors=True)
        if final_dir.exists():
            logger.warning(f"发现未登记的残留目录 {final_dir}，将被替换")
            shutil.rmtree(final_dir)
        os.rename(self.staging_dir, final_dir)
        self.state = InstallState.COMMITTED

        return {
            binary: final_dir / staged.path.relative_to(self.staging_dir)
            for binary, staged in self.staged.items()
        }

    def abort(self) -> None:
        """放弃事务并删除临时目录；已提交的事务不受影响。"""
        if self.state is InstallState.COMMITTED:
            return
        shutil.rmtree(self.staging_dir, ignore_errors=True)
        self.state = InstallState.ABORTED
        logger.debug(f"已清理安装临时目录 {self.staging_dir}")


class DownloadManager:
    """
    下载管理器类。

    负责把一个 Release 安装进版本缓存。安装是幂等的：
    已安装且校验通过的版本直接返回已有条目，不产生任何网络请求。
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        cache_manager: CacheManager,
        release_source: IReleaseSource
    ):
        """
        初始化下载管理器。

        参数:
            config_manager: 配置管理器实例
            cache_manager: 版本缓存管理器实例
            release_source: 发布源（下载资产）
        """
        self.config_manager = config_manager
        self.cache_manager = cache_manager
        self.release_source = release_source

    def _select_assets(self, release: Release) -> Dict[str, ReleaseAsset]:
        """
        选出当前平台上每个受管理二进制的资产。

        抛出:
            InstallationError: 发布缺少某个二进制
        """
        target = self.config_manager.get_target_triple()
        assets = {}
        missing = []
        for binary in self.config_manager.get_binaries():
            asset = release.asset_for(binary, target)
            if asset is None:
                missing.append(binary)
            else:
                assets[binary] = asset
        if missing:
            raise InstallationError(
                f"版本 {release.version} 没有为 {target} 提供二进制: {', '.join(missing)}"
            )
        return assets

    def install(
        self,
        release: Release,
        progress_callback: Optional[ProgressCallback] = None,
        status_callback: Optional[StatusCallback] = None
    ) -> CacheEntry:
        """
        下载并安装指定发布。

        参数:
            release: 要安装的发布
            progress_callback: 下载进度回调 (二进制, 已下载字节, 总字节)
            status_callback: 状态消息回调

        返回:
            安装后的 CacheEntry

        抛出:
            ChecksumMismatchError: 任一压缩包摘要不一致
            FetchError: 下载在重试后仍然失败
            InstallationError / ExtractionError: 其他安装失败
        """
        version = release.version

        with self.cache_manager.version_lock(version):
            existing = self.cache_manager.get(version)
            if existing is not None:
                if self.cache_manager.verify(existing):
                    logger.info(f"版本 {version} 已安装，跳过下载")
                    return existing
                self.cache_manager.discard_corrupt(existing)

            assets = self._select_assets(release)
            transaction = InstallTransaction(version, self.cache_manager.versions_dir)
            try:
                if status_callback:
                    status_callback(f"正在下载 {version} 的 {len(assets)} 个二进制...")
                self._stage_all(transaction, assets, progress_callback)
                transaction.mark_verified(list(assets))

                final_dir = self.cache_manager.version_dir(version)
                artifacts = transaction.commit(final_dir)
                entry = CacheEntry(
                    version=version,
                    root_dir=str(final_dir),
                    artifacts={b: str(p) for b, p in artifacts.items()},
                    digests={b: s.digest for b, s in transaction.staged.items()},
                    archive_digests={b: s.archive_digest for b, s in transaction.staged.items()},
                    installed_at=utc_now(),
                )
                try:
                    self.cache_manager.add_entry(entry)
                except BaseException:
                    shutil.rmtree(final_dir, ignore_errors=True)
                    raise
            except BaseException:
                transaction.abort()
                raise

        logger.info(f"成功安装版本 {version} 到 {entry.root_dir}")
        if status_callback:
            status_callback(f"已安装 {version}")
        return entry

    def _stage_all(
        self,
        transaction: InstallTransaction,
        assets: Dict[str, ReleaseAsset],
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        """
        并发下载全部二进制并等待所有任务结束。

        任一任务失败时在全部任务结束后抛出；校验和不一致优先于其他错误。
        """
        workers = max(1, min(len(assets), self.config_manager.get_max_download_workers()))
        errors: List[BaseException] = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="penv-download") as executor:
            futures = {
                executor.submit(self._stage_binary, transaction, asset, progress_callback): binary
                for binary, asset in assets.items()
            }
            for future in as_completed(futures):
                binary = futures[future]
                try:
                    transaction.record(future.result())
                except Exception as e:
                    logger.error(f"{binary} 安装失败: {e}")
                    errors.append(e)

        if errors:
            mismatches = [e for e in errors if isinstance(e, ChecksumMismatchError)]
            raise (mismatches or errors)[0]

    def _stage_binary(
        self,
        transaction: InstallTransaction,
        asset: ReleaseAsset,
        progress_callback: Optional[ProgressCallback]
    ) -> StagedBinary:
        """
        下载、校验并解压单个二进制。

        参数:
            transaction: 所属安装事务
            asset: 二进制资产
            progress_callback: 进度回调

        返回:
            StagedBinary
        """
        expected = parse_checksum(self.release_source.fetch_bytes(asset.checksum_url))

        archive_path = transaction.archives_dir / asset.name
        on_progress = None
        if progress_callback:
            def on_progress(downloaded: int, total: int) -> None:
                progress_callback(asset.binary, downloaded, total)

        logger.info(f"正在下载 {asset.url}")
        actual = self.release_source.download_file(asset.url, archive_path, on_progress)
        if actual != expected:
            raise ChecksumMismatchError(
                f"{asset.name} 校验失败: 期望 {expected}，实际 {actual}"
            )

        binary_path = transaction.bin_dir / asset.binary
        try:
            extract_member(archive_path, asset.binary, binary_path)
        except (OSError, ValueError, tarfile.TarError) as e:
            raise ExtractionError(f"解压 {asset.name} 失败: {e}") from e
        make_executable(binary_path)

        return StagedBinary(
            binary=asset.binary,
            path=binary_path,
            digest=sha256_file(binary_path),
            archive_digest=actual,
        )
