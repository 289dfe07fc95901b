"""
数据模型模块。

定义发布、缓存条目、检出、环境和激活状态等记录，以及它们与 JSON 的相互转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

GIT_VERSION_PREFIX = "git+"


def utc_now() -> str:
    """返回当前 UTC 时间的 ISO 8601 字符串。"""
    return datetime.now(timezone.utc).isoformat()


def format_git_version(remote_url: str, commit: str) -> str:
    """
    构造 git 伪版本字符串。

    参数:
        remote_url: 远程仓库地址
        commit: 已检出的提交哈希

    返回:
        形如 git+<url>@<commit> 的版本字符串
    """
    return f"{GIT_VERSION_PREFIX}{remote_url}@{commit}"


def is_git_version(version: str) -> bool:
    """判断版本字符串是否为 git 伪版本。"""
    return version.startswith(GIT_VERSION_PREFIX)


@dataclass(frozen=True)
class ReleaseAsset:
    """单个二进制在某个平台上的下载地址。"""

    binary: str
    target: str
    name: str
    url: str
    checksum_url: str


@dataclass
class Release:
    """
    远程发布元数据。

    assets 的结构为 {binary: {target_triple: ReleaseAsset}}。
    """

    version: str
    tag: str
    assets: Dict[str, Dict[str, ReleaseAsset]] = field(default_factory=dict)
    prerelease: bool = False
    published_at: str = ""

    def asset_for(self, binary: str, target: str) -> Optional[ReleaseAsset]:
        """获取指定二进制在指定平台上的资产。"""
        return self.assets.get(binary, {}).get(target)

    def supports(self, binaries: List[str], target: str) -> bool:
        """判断该发布是否为指定平台提供了全部二进制。"""
        return all(self.asset_for(binary, target) is not None for binary in binaries)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 JSON 的字典。"""
        return {
            "version": self.version,
            "tag": self.tag,
            "prerelease": self.prerelease,
            "published_at": self.published_at,
            "assets": [
                {
                    "binary": asset.binary,
                    "target": asset.target,
                    "name": asset.name,
                    "url": asset.url,
                    "checksum_url": asset.checksum_url,
                }
                for targets in self.assets.values()
                for asset in targets.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Release":
        """从字典创建实例。"""
        release = cls(
            version=data["version"],
            tag=data.get("tag", data["version"]),
            prerelease=data.get("prerelease", False),
            published_at=data.get("published_at", ""),
        )
        for raw in data.get("assets", []):
            asset = ReleaseAsset(**raw)
            release.assets.setdefault(asset.binary, {})[asset.target] = asset
        return release


@dataclass
class CacheEntry:
    """
    已安装并通过校验的版本记录。

    artifacts 保存每个二进制的绝对路径，digests 保存安装时计算的 sha256。
    """

    version: str
    root_dir: str
    artifacts: Dict[str, str] = field(default_factory=dict)
    digests: Dict[str, str] = field(default_factory=dict)
    archive_digests: Dict[str, str] = field(default_factory=dict)
    installed_at: str = ""

    def artifact_path(self, binary: str) -> Optional[Path]:
        """获取指定二进制的安装路径。"""
        path = self.artifacts.get(binary)
        return Path(path) if path else None

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 JSON 的字典。"""
        return {
            "version": self.version,
            "root_dir": self.root_dir,
            "artifacts": dict(self.artifacts),
            "digests": dict(self.digests),
            "archive_digests": dict(self.archive_digests),
            "installed_at": self.installed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """从字典创建实例。"""
        return cls(
            version=data["version"],
            root_dir=data.get("root_dir", ""),
            artifacts=dict(data.get("artifacts", {})),
            digests=dict(data.get("digests", {})),
            archive_digests=dict(data.get("archive_digests", {})),
            installed_at=data.get("installed_at", ""),
        )


@dataclass
class Checkout:
    """按源地址哈希寻址的 git 工作目录记录。"""

    source_url: str
    content_address: str
    local_workdir_path: str
    last_fetched_at: str = ""
    resolved_commit: str = ""
    referenced_by: List[str] = field(default_factory=list)

    @property
    def workdir(self) -> Path:
        return Path(self.local_workdir_path)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 JSON 的字典。"""
        return {
            "source_url": self.source_url,
            "content_address": self.content_address,
            "local_workdir_path": self.local_workdir_path,
            "last_fetched_at": self.last_fetched_at,
            "resolved_commit": self.resolved_commit,
            "referenced_by": sorted(set(self.referenced_by)),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkout":
        """从字典创建实例。"""
        return cls(
            source_url=data["source_url"],
            content_address=data["content_address"],
            local_workdir_path=data["local_workdir_path"],
            last_fetched_at=data.get("last_fetched_at", ""),
            resolved_commit=data.get("resolved_commit", ""),
            referenced_by=list(data.get("referenced_by", [])),
        )


@dataclass
class Environment:
    """
    已注册的命名环境。

    alias 创建后不可修改；pinned_version 只会被显式的 upgrade 改变。
    checkout_reference 是检出的内容地址，仅 git 来源的环境设置。
    """

    alias: str
    version_requirement: str
    grpc_url: str
    root_directory: str
    pinned_version: Optional[str] = None
    include_node: bool = True
    generate_network: bool = False
    pd_join_url: Optional[str] = None
    checkout_reference: Optional[str] = None
    created_at: str = ""

    @property
    def root(self) -> Path:
        return Path(self.root_directory)

    @property
    def is_checkout(self) -> bool:
        return self.checkout_reference is not None

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    def binary_home(self, binary: str) -> Path:
        """获取指定二进制的数据目录。"""
        if binary == "pd":
            return self.node_dir / "pd"
        return self.root / binary

    @property
    def node_dir(self) -> Path:
        return self.root / "network_data" / "node0"

    @property
    def cometbft_home(self) -> Path:
        return self.node_dir / "cometbft"

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 JSON 的字典。"""
        return {
            "alias": self.alias,
            "version_requirement": self.version_requirement,
            "pinned_version": self.pinned_version,
            "grpc_url": self.grpc_url,
            "include_node": self.include_node,
            "generate_network": self.generate_network,
            "pd_join_url": self.pd_join_url,
            "root_directory": self.root_directory,
            "checkout_reference": self.checkout_reference,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Environment":
        """从字典创建实例。"""
        return cls(
            alias=data["alias"],
            version_requirement=data["version_requirement"],
            grpc_url=data["grpc_url"],
            root_directory=data["root_directory"],
            pinned_version=data.get("pinned_version"),
            include_node=data.get("include_node", True),
            generate_network=data.get("generate_network", False),
            pd_join_url=data.get("pd_join_url"),
            checkout_reference=data.get("checkout_reference"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class ActiveState:
    """当前激活的环境别名，None 表示未激活任何环境。"""

    active_alias: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 JSON 的字典。"""
        return {"active_alias": self.active_alias}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActiveState":
        """从字典创建实例。"""
        alias = data.get("active_alias")
        return cls(active_alias=alias if isinstance(alias, str) and alias else None)
