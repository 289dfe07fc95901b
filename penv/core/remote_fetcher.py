"""
远程发布获取模块。

提供从 GitHub Releases API 获取 Penumbra 发布列表、按平台筛选资产以及下载文件的功能。
"""

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable

import requests

from penv.core.config_manager import ConfigManager
from penv.core.interfaces import IReleaseSource
from penv.core.models import Release, ReleaseAsset
from penv.core.version_utils import parse_version
from penv.utils.errors import PenvError
from penv.utils.file_utils import atomic_save_json, load_json
from penv.utils.logger import get_logger
from penv.utils.retry import RetryHandler

logger = get_logger()

GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": "penv",
}
ASSET_PATTERN = re.compile(r'^(?P<binary>[A-Za-z0-9_]+)-(?P<target>[A-Za-z0-9_]+(?:-[A-Za-z0-9_]+){2,3})\.tar\.gz$')
CHECKSUM_SUFFIX = ".sha256"
PAGE_SIZE = 100
MAX_PAGES = 10
CHUNK_SIZE = 64 * 1024


class RemoteFetcherError(PenvError):
    """远程获取错误异常。"""
    pass


class FetchError(RemoteFetcherError):
    """网络请求在重试后仍然失败异常。"""
    pass


class NoReleasesError(RemoteFetcherError):
    """发布索引为空异常（与"没有版本满足需求"区分）。"""
    pass


class ChecksumFormatError(RemoteFetcherError):
    """校验和文件格式错误异常。"""
    pass


def parse_checksum(content: bytes) -> str:
    """
    从校验和文件内容中取出 sha256 摘要（前 64 个十六进制字符）。

    参数:
        content: 校验和文件内容

    返回:
        小写十六进制摘要

    抛出:
        ChecksumFormatError: 内容不以 64 位十六进制摘要开头
    """
    text = content.decode("utf-8", errors="replace").strip()
    match = re.match(r'^([0-9a-fA-F]{64})', text)
    if not match:
        raise ChecksumFormatError(f"无法解析校验和文件内容: {text[:80]!r}")
    return match.group(1).lower()


def parse_release(data: Dict[str, Any], binaries: List[str]) -> Optional[Release]:
    """
    把 GitHub API 返回的单个发布转换为 Release。

    参数:
        data: GitHub release JSON 对象
        binaries: 受管理的二进制名称

    返回:
        Release 对象；草稿或标签无法解析时返回 None
    """
    if data.get("draft"):
        return None

    tag = data.get("tag_name") or ""
    version = parse_version(tag)
    if version is None:
        logger.debug(f"跳过无法解析版本号的发布标签: {tag!r}")
        return None

    urls = {
        asset.get("name", ""): asset.get("browser_download_url", "")
        for asset in data.get("assets", [])
    }

    release = Release(
        version=str(version),
        tag=tag,
        prerelease=bool(data.get("prerelease")) or bool(version.prerelease),
        published_at=data.get("published_at") or "",
    )
    for name, url in urls.items():
        match = ASSET_PATTERN.match(name)
        if not match or match.group("binary") not in binaries:
            continue
        checksum_url = urls.get(name + CHECKSUM_SUFFIX)
        if not checksum_url:
            logger.debug(f"发布 {tag} 的资产 {name} 缺少校验和文件，已忽略")
            continue
        asset = ReleaseAsset(
            binary=match.group("binary"),
            target=match.group("target"),
            name=name,
            url=url,
            checksum_url=checksum_url,
        )
        release.assets.setdefault(asset.binary, {})[asset.target] = asset

    return release


class RemoteFetcher(IReleaseSource):
    """
    远程发布获取器类。

    负责查询发布索引并下载资产。发布列表只在进程内存中缓存；
    只有显式传入 use_cache=True 时才读写磁盘缓存。
    实现 IReleaseSource 抽象接口。
    """

    def __init__(self, config_manager: ConfigManager, session: Optional[requests.Session] = None):
        """
        初始化远程发布获取器。

        参数:
            config_manager: 配置管理器实例
            session: requests 会话，默认新建
        """
        self.config_manager = config_manager
        self.session = session or requests.Session()
        self.retry_handler = RetryHandler(max_retries=config_manager.get_download_retry_count())
        self.timeout = config_manager.get_request_timeout()
        self._memory_cache: Optional[List[Release]] = None

    @property
    def releases_url(self) -> str:
        repository = self.config_manager.get_repository()
        return f"{self.config_manager.get_github_api_url()}/repos/{repository}/releases"

    def _get(self, url: str, **kwargs: Any) -> requests.Response:
        """
        发送 GET 请求，失败时按配置重试。

        参数:
            url: 请求地址
            **kwargs: 传给 requests 的其他参数

        返回:
            状态码为 2xx 的响应

        抛出:
            FetchError: 重试耗尽或遇到不可重试的错误
        """
        def _do_get() -> requests.Response:
            response = self.session.get(url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response

        try:
            return self.retry_handler.execute(_do_get, description=f"GET {url}")
        except requests.exceptions.RequestException as e:
            logger.error(f"请求 {url} 失败: {e}")
            raise FetchError(f"请求 {url} 失败: {e}") from e

    def list_releases(self, use_cache: bool = False) -> List[Release]:
        """
        获取全部已发布版本，按版本号降序排列。

        参数:
            use_cache: 是否允许使用未过期的磁盘缓存

        返回:
            Release 列表（可能为空）
        """
        if self._memory_cache is not None:
            return list(self._memory_cache)

        if use_cache:
            cached = self._load_disk_cache()
            if cached is not None:
                logger.info(f"使用本地缓存的发布索引（{len(cached)} 个发布）")
                self._memory_cache = cached
                return list(cached)

        binaries = self.config_manager.get_binaries()
        releases: List[Release] = []
        for page in range(1, MAX_PAGES + 1):
            logger.debug(f"获取发布索引第 {page} 页: {self.releases_url}")
            response = self._get(
                self.releases_url,
                headers=GITHUB_HEADERS,
                params={"per_page": PAGE_SIZE, "page": page},
            )
            try:
                items = response.json()
            except ValueError as e:
                raise FetchError(f"发布索引不是合法的 JSON: {e}") from e
            if not isinstance(items, list):
                raise FetchError(f"发布索引格式不支持: {type(items).__name__}")

            for item in items:
                release = parse_release(item, binaries)
                if release is not None:
                    releases.append(release)
            if len(items) < PAGE_SIZE:
                break

        releases.sort(key=lambda r: parse_version(r.version), reverse=True)
        logger.info(f"从 {self.releases_url} 获取到 {len(releases)} 个发布")
        self._memory_cache = releases
        if use_cache:
            self._save_disk_cache(releases)
        return list(releases)

    def fetch_bytes(self, url: str) -> bytes:
        """
        获取小文件（如校验和文件）的完整内容。

        参数:
            url: 文件地址

        返回:
            文件内容
        """
        return self._get(url).content

    def download_file(
        self,
        url: str,
        dest: Path,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> str:
        """
        流式下载文件，同时计算 sha256 摘要。

        参数:
            url: 文件地址
            dest: 输出路径
            progress_callback: 进度回调 (已下载字节, 总字节)

        返回:
            下载内容的十六进制 sha256 摘要
        """
        def _do_download() -> str:
            digest = hashlib.sha256()
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0) or 0)
                downloaded = 0
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        digest.update(chunk)
                        downloaded += len(chunk)
                        if progress_callback:
                            progress_callback(downloaded, total)
            return digest.hexdigest()

        try:
            return self.retry_handler.execute(_do_download, description=f"下载 {url}")
        except requests.exceptions.RequestException as e:
            logger.error(f"下载 {url} 失败: {e}")
            raise FetchError(f"下载 {url} 失败: {e}") from e

    def _load_disk_cache(self) -> Optional[List[Release]]:
        """读取未过期的磁盘缓存，不存在、已过期或属于其他仓库时返回 None。"""
        path = self.config_manager.RELEASE_CACHE_FILE
        try:
            cached = load_json(path, None)
        except (OSError, ValueError) as e:
            logger.warning(f"读取发布索引缓存失败，忽略缓存: {e}")
            return None
        if not isinstance(cached, dict) or cached.get("source") != self.releases_url:
            return None

        try:
            last_update = datetime.fromisoformat(cached.get("last_update", ""))
        except ValueError:
            return None
        age = (datetime.now(timezone.utc) - last_update).total_seconds()
        if age >= self.config_manager.get_cache_expire_time():
            logger.debug("发布索引缓存已过期")
            return None

        return [Release.from_dict(item) for item in cached.get("releases", [])]

    def _save_disk_cache(self, releases: List[Release]) -> None:
        """
        更新发布索引磁盘缓存。

        参数:
            releases: 发布列表
        """
        atomic_save_json(self.config_manager.RELEASE_CACHE_FILE, {
            "source": self.releases_url,
            "last_update": datetime.now(timezone.utc).isoformat(),
            "releases": [r.to_dict() for r in releases],
        })
