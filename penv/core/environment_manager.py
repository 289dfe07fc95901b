"""
环境管理模块。

提供命名环境的创建、查询、升级和删除功能，以及环境目录布局和二进制链接的维护。

环境根目录布局:
    environments/<alias>/
        bin -> .generations/<id>/      当前二进制目录（原子替换的符号链接）
        .generations/<id>/pcli ...     指向版本缓存的符号链接，或 git 检出的包装脚本
        pcli/  pclientd/               客户端数据目录
        network_data/node0/pd/         节点数据目录（仅 include_node）
        network_data/node0/cometbft/
"""

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse, urlunparse

from filelock import FileLock

from penv.core.cache_manager import CacheManager, VersionNotInstalledError
from penv.core.checkout_manager import CheckoutManager, CheckoutNotFoundError
from penv.core.config_manager import ConfigManager
from penv.core.interfaces import IStateStore
from penv.core.models import Environment, format_git_version, utc_now
from penv.core.state_store import clear_active
from penv.core.version_utils import (
    VersionNotFoundError,
    parse_requirement,
    parse_version,
    resolve,
)
from penv.utils.errors import PenvError
from penv.utils.file_utils import (
    atomic_save_json,
    atomic_symlink,
    load_json,
    make_executable,
    read_symlink,
)
from penv.utils.input_validator import InputValidator
from penv.utils.logger import get_logger

logger = get_logger()

NODE_BINARY = "pd"
GENERATIONS_DIR = ".generations"

# cometbft/data 下的链数据，重置后节点从头同步
COMETBFT_STATE_DIRS = ("state.db", "tx_index.db", "blockstore.db", "cs.wal", "evidence.db")
PRIV_VALIDATOR_STATE_FILE = "priv_validator_state.json"
PD_STATE_DIR = "rocksdb"
# 客户端视图数据库；密钥与配置文件不在其中
CLIENT_STATE_PATTERNS = {
    "pcli": "pcli-view.sqlite*",
    "pclientd": "pclientd-db.sqlite*",
}

WRAPPER_TEMPLATE = """#!/bin/sh
# penv: {binary} for environment {alias}, built from {source_url}
exec cargo run --quiet --release --manifest-path {manifest} --bin {binary} -- "$@"
"""


class EnvironmentManagerError(PenvError):
    """环境管理错误异常。"""
    pass


class DuplicateAliasError(EnvironmentManagerError):
    """环境别名已存在异常。"""
    pass


class UnknownAliasError(EnvironmentManagerError):
    """环境别名不存在异常。"""
    pass


@dataclass
class EnvironmentOptions:
    """创建环境时的可选配置。"""

    include_node: bool = True
    generate_network: bool = False
    pd_join_url: Optional[str] = None


def default_pd_join_url(grpc_url: str, port: int) -> str:
    """
    由 gRPC 地址推导 pd 加入网络使用的 CometBFT RPC 地址。

    保留主机名，协议改为 http，端口改为 port。

    参数:
        grpc_url: 环境的 gRPC 地址
        port: CometBFT RPC 端口

    返回:
        pd 加入地址
    """
    parsed = urlparse(grpc_url)
    host = parsed.hostname or "localhost"
    if ":" in host:
        host = f"[{host}]"
    return urlunparse(("http", f"{host}:{port}", "", "", "", ""))


def _remove_path(path: Path) -> bool:
    """删除文件或目录（不跟随符号链接），不存在时返回 False。"""
    if not os.path.lexists(path):
        return False
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
    logger.debug(f"已删除 {path}")
    return True


class EnvironmentManager:
    """
    环境管理器类。

    environments.json 的读改写由 environments.lock 串行化；
    同一环境的二进制目录重建由 env-<alias>.lock 串行化。
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        cache_manager: CacheManager,
        checkout_manager: CheckoutManager,
        state_store: IStateStore
    ):
        """
        初始化环境管理器。

        参数:
            config_manager: 配置管理器实例
            cache_manager: 版本缓存管理器实例
            checkout_manager: 检出管理器实例
            state_store: 激活状态存储（删除激活中的环境时需要清除）
        """
        self.config_manager = config_manager
        self.cache_manager = cache_manager
        self.checkout_manager = checkout_manager
        self.state_store = state_store
        self.index_file = config_manager.ENVIRONMENT_INDEX_FILE
        self.environments_dir = config_manager.ENVIRONMENTS_DIR

    def index_lock(self) -> FileLock:
        return FileLock(str(self.config_manager.lock_path("environments")))

    def environment_lock(self, alias: str) -> FileLock:
        return FileLock(str(self.config_manager.lock_path(f"env-{alias}")))

    def _load_index(self) -> Dict[str, Environment]:
        data = load_json(self.index_file, {})
        environments = data.get("environments", {}) if isinstance(data, dict) else {}
        return {alias: Environment.from_dict(raw) for alias, raw in environments.items()}

    def _save_index(self, environments: Dict[str, Environment]) -> None:
        atomic_save_json(self.index_file, {
            "environments": {alias: env.to_dict() for alias, env in environments.items()},
        })

    def find(self, alias: str) -> Optional[Environment]:
        """按别名查找环境，不存在返回 None。"""
        return self._load_index().get(alias)

    def get(self, alias: str) -> Environment:
        """
        按别名获取环境。

        参数:
            alias: 环境别名

        返回:
            Environment

        抛出:
            UnknownAliasError: 别名未注册
        """
        environment = self.find(alias)
        if environment is None:
            raise UnknownAliasError(f"环境 '{alias}' 不存在")
        return environment

    def list(self) -> List[Environment]:
        """列出全部环境，按别名排序。"""
        return sorted(self._load_index().values(), key=lambda e: e.alias)

    def pinned_by(self, version: str) -> List[str]:
        """返回固定在指定版本上的环境别名。"""
        return [env.alias for env in self.list() if env.pinned_version == version]

    def binaries_for(self, environment: Environment) -> List[str]:
        """获取环境管理的二进制，不含节点时排除 pd。"""
        binaries = self.config_manager.get_binaries()
        if not environment.include_node:
            binaries = [b for b in binaries if b != NODE_BINARY]
        return binaries

    def create(
        self,
        alias: str,
        requirement: str,
        grpc_url: str,
        options: Optional[EnvironmentOptions] = None
    ) -> Environment:
        """
        创建新环境。

        需求只在已安装版本（或已存在的检出）中解析，不会自动安装。

        参数:
            alias: 环境别名
            requirement: 版本需求或 git 源地址
            grpc_url: 环境使用的 gRPC 地址
            options: 其他选项

        返回:
            新创建的 Environment

        抛出:
            DuplicateAliasError: 别名已存在
            VersionNotInstalledError: 没有已安装版本满足需求
        """
        options = options or EnvironmentOptions()
        alias = InputValidator.validate_alias(alias)
        grpc_url = InputValidator.validate_url(grpc_url)
        parsed = parse_requirement(requirement)

        with self.index_lock():
            environments = self._load_index()
            if alias in environments:
                raise DuplicateAliasError(f"环境 '{alias}' 已存在")

            root = self.environments_dir / alias
            if os.path.lexists(root):
                raise EnvironmentManagerError(
                    f"环境目录 {root} 已存在但没有对应的注册记录，请手动删除后重试"
                )

            checkout = None
            if parsed.is_git:
                checkout = self.checkout_manager.find(parsed.text)
                if checkout is None:
                    raise VersionNotInstalledError(
                        f"{parsed.text} 尚未检出，请先执行 penv install {parsed.text}"
                    )
                pinned_version = format_git_version(checkout.source_url, checkout.resolved_commit)
            else:
                try:
                    pinned_version = resolve(parsed, self.cache_manager.installed_versions())
                except VersionNotFoundError as e:
                    raise VersionNotInstalledError(
                        f"没有已安装的版本满足 '{requirement}'，请先执行 penv install '{requirement}'"
                    ) from e

            pd_join_url = None
            if options.include_node:
                pd_join_url = options.pd_join_url or default_pd_join_url(
                    grpc_url, self.config_manager.get_default_pd_join_port()
                )
                pd_join_url = InputValidator.validate_url(pd_join_url)

            environment = Environment(
                alias=alias,
                version_requirement=parsed.text,
                grpc_url=grpc_url,
                root_directory=str(root),
                pinned_version=pinned_version,
                include_node=options.include_node,
                generate_network=options.generate_network,
                pd_join_url=pd_join_url,
                checkout_reference=checkout.content_address if checkout else None,
                created_at=utc_now(),
            )

            referenced = False
            try:
                self._create_layout(environment)
                self.materialize_binaries(environment)
                if checkout is not None:
                    self.checkout_manager.add_reference(checkout.content_address, alias)
                    referenced = True
                environments[alias] = environment
                self._save_index(environments)
            except BaseException:
                shutil.rmtree(root, ignore_errors=True)
                if referenced:
                    self.checkout_manager.release_reference(checkout.content_address, alias, prune=False)
                raise

        logger.info(f"已创建环境 {alias}（{pinned_version}）于 {root}")
        return environment

    def _create_layout(self, environment: Environment) -> None:
        """创建环境根目录及各二进制的数据目录。"""
        environment.root.mkdir(parents=True)
        for binary in self.binaries_for(environment):
            environment.binary_home(binary).mkdir(parents=True, exist_ok=True)
        if environment.include_node:
            environment.cometbft_home.mkdir(parents=True, exist_ok=True)

    def _write_wrapper(self, environment: Environment, binary: str, dest: Path) -> None:
        """为 git 来源的环境写入先构建再运行的包装脚本。"""
        checkout = self.checkout_manager.get(environment.checkout_reference)
        if checkout is None or not checkout.workdir.is_dir():
            raise CheckoutNotFoundError(
                f"环境 {environment.alias} 引用的检出不存在，请重新执行 penv install {environment.version_requirement}"
            )
        dest.write_text(WRAPPER_TEMPLATE.format(
            binary=binary,
            alias=environment.alias,
            source_url=checkout.source_url,
            manifest=checkout.workdir / "Cargo.toml",
        ), encoding="utf-8")
        make_executable(dest)

    def materialize_binaries(self, environment: Environment) -> Path:
        """
        重建环境的二进制目录。

        新内容先写入独立的 generation 目录，再原子替换 bin 链接；
        任何二进制缺失时抛出异常，bin 链接保持不变。

        参数:
            environment: 目标环境

        返回:
            环境的 bin 链接路径

        抛出:
            VersionNotInstalledError: 固定版本已从缓存中删除
            CheckoutNotFoundError: 引用的检出不存在
            EnvironmentManagerError: 环境根目录已被删除
        """
        binaries = self.binaries_for(environment)
        entry = None
        if not environment.is_checkout:
            entry = self.cache_manager.require(environment.pinned_version)

        with self.environment_lock(environment.alias):
            generations = environment.root / GENERATIONS_DIR
            generation = generations / uuid.uuid4().hex
            if not environment.root.is_dir():
                raise EnvironmentManagerError(f"环境 {environment.alias} 的目录 {environment.root} 不存在")
            # 不带 parents，已删除的环境根目录不会被重新创建
            generations.mkdir(exist_ok=True)
            generation.mkdir()
            try:
                for binary in binaries:
                    dest = generation / binary
                    if entry is None:
                        self._write_wrapper(environment, binary, dest)
                    else:
                        os.symlink(entry.artifact_path(binary), dest)
                atomic_symlink(generation, environment.bin_dir)
            except BaseException:
                shutil.rmtree(generation, ignore_errors=True)
                raise

            for stale in generations.iterdir():
                if stale != generation:
                    shutil.rmtree(stale, ignore_errors=True)

        logger.debug(f"环境 {environment.alias} 的二进制目录已指向 {generation}")
        return environment.bin_dir

    def upgrade(self, alias: str) -> Environment:
        """
        按环境保存的需求重新解析已安装版本，有更新版本时改为固定到新版本。

        git 来源的环境会先拉取检出的远程更新。不迁移磁盘上的数据。

        参数:
            alias: 环境别名

        返回:
            升级后（或未变化）的 Environment
        """
        with self.index_lock():
            environments = self._load_index()
            environment = environments.get(alias)
            if environment is None:
                raise UnknownAliasError(f"环境 '{alias}' 不存在")

            previous = environment.pinned_version
            candidate = self._upgrade_candidate(environment)
            if candidate is None:
                logger.info(f"环境 {alias} 已是最新（{previous}）")
                return environment

            environment.pinned_version = candidate
            self.materialize_binaries(environment)
            environments[alias] = environment
            try:
                self._save_index(environments)
            except BaseException:
                environment.pinned_version = previous
                self.materialize_binaries(environment)
                raise

        logger.info(f"环境 {alias} 已从 {previous} 升级到 {candidate}")
        return environment

    def _upgrade_candidate(self, environment: Environment) -> Optional[str]:
        """返回严格更新的固定版本；没有更新时返回 None。"""
        if environment.is_checkout:
            checkout = self.checkout_manager.get(environment.checkout_reference)
            if checkout is None:
                raise CheckoutNotFoundError(f"环境 {environment.alias} 引用的检出不存在")
            checkout = self.checkout_manager.refresh(checkout)
            candidate = format_git_version(checkout.source_url, checkout.resolved_commit)
            return candidate if candidate != environment.pinned_version else None

        requirement = parse_requirement(environment.version_requirement)
        try:
            candidate = resolve(requirement, self.cache_manager.installed_versions())
        except VersionNotFoundError:
            logger.debug(f"没有已安装版本满足 '{requirement}'")
            return None

        current = parse_version(environment.pinned_version or "")
        if current is not None and parse_version(candidate) <= current:
            return None
        return candidate

    def reset(
        self,
        alias: str,
        leave_client_state: bool = False,
        leave_node_state: bool = False
    ) -> List[Path]:
        """
        重置环境的应用状态，保留环境注册记录、配置和密钥。

        节点状态包括 CometBFT 的链数据库和 pd 的 rocksdb，并把
        priv_validator_state.json 写回空对象；客户端状态是 pcli 和 pclientd 的视图数据库。

        参数:
            alias: 环境别名
            leave_client_state: 不重置客户端状态
            leave_node_state: 不重置节点状态

        返回:
            被删除的路径列表

        抛出:
            UnknownAliasError: 别名未注册
        """
        removed: List[Path] = []
        with self.index_lock():
            environment = self.get(alias)
            with self.environment_lock(alias):
                if environment.include_node and not leave_node_state:
                    removed.extend(self._reset_node_state(environment))
                if not leave_client_state:
                    removed.extend(self._reset_client_state(environment))

        logger.info(f"已重置环境 {alias}，删除 {len(removed)} 项数据")
        return removed

    def _reset_node_state(self, environment: Environment) -> List[Path]:
        data_dir = environment.cometbft_home / "data"
        targets = [data_dir / name for name in COMETBFT_STATE_DIRS]
        targets.append(environment.binary_home(NODE_BINARY) / PD_STATE_DIR)
        removed = [path for path in targets if _remove_path(path)]
        if data_dir.is_dir():
            (data_dir / PRIV_VALIDATOR_STATE_FILE).write_text("{}", encoding="utf-8")
        return removed

    def _reset_client_state(self, environment: Environment) -> List[Path]:
        removed = []
        for binary, pattern in CLIENT_STATE_PATTERNS.items():
            if binary not in self.binaries_for(environment):
                continue
            home = environment.binary_home(binary)
            if home.is_dir():
                removed.extend(path for path in sorted(home.glob(pattern)) if _remove_path(path))
        return removed

    def delete(self, alias: str) -> Environment:
        """
        删除环境：清除指向它的激活状态、注册记录和根目录，并释放检出引用。

        参数:
            alias: 环境别名

        返回:
            被删除的 Environment
        """
        with self.index_lock():
            environments = self._load_index()
            environment = environments.get(alias)
            if environment is None:
                raise UnknownAliasError(f"环境 '{alias}' 不存在")

            clear_active(self.state_store, self.config_manager.BIN_LINK, only_alias=alias)
            del environments[alias]
            self._save_index(environments)

            if environment.root.exists():
                shutil.rmtree(environment.root)

        if environment.checkout_reference:
            self.checkout_manager.release_reference(environment.checkout_reference, alias)
        logger.info(f"已删除环境 {alias}")
        return environment

    def describe(self, environment: Environment) -> Dict[str, Any]:
        """
        生成环境的详细描述。

        参数:
            environment: 环境

        返回:
            描述字典
        """
        info: Dict[str, Any] = environment.to_dict()
        info["binaries"] = self.binaries_for(environment)
        target = read_symlink(environment.bin_dir)
        info["bin_directory"] = str(target) if target else None
        if environment.checkout_reference:
            checkout = self.checkout_manager.get(environment.checkout_reference)
            if checkout is not None:
                info["checkout"] = {
                    "source_url": checkout.source_url,
                    "workdir": checkout.local_workdir_path,
                    "resolved_commit": checkout.resolved_commit,
                    "last_fetched_at": checkout.last_fetched_at,
                }
        return info
