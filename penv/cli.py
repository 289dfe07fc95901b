"""
penv 命令行接口模块。
"""

import argparse
import json
import shutil
import sys
import threading
from pathlib import Path
from typing import List, Dict, Tuple

from penv.core.config_manager import ConfigManager
from penv.core.environment_manager import EnvironmentOptions
from penv.core.models import CacheEntry, Checkout
from penv.core.version_manager import VersionManager
from penv.utils.errors import PenvError
from penv.utils.logger import get_logger

logger = get_logger()

__version__ = "0.1.0"


def create_parser() -> argparse.ArgumentParser:
    """
    创建并配置命令行参数解析器。

    返回:
        配置好的 ArgumentParser 实例
    """
    parser = argparse.ArgumentParser(
        prog="penv",
        description="penv - Penumbra 多二进制版本与环境管理器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  penv install 0.79                              安装满足 ^0.79 的最新版本
  penv manage create testnet 0.79 https://grpc.testnet.penumbra.zone
  penv use testnet                               激活 testnet 环境
  eval "$(penv hook zsh)"                        在 ~/.zshrc 中安装 shell 钩子
  penv which --detailed                          显示当前激活的环境
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="启用详细输出",
    )

    parser.add_argument(
        "--home",
        type=Path,
        default=None,
        help="penv 主目录（默认读取 PENUMBRA_PENV_HOME）",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="命令",
        description="可用的 CLI 命令",
    )

    install_parser = subparsers.add_parser(
        "install",
        help="安装满足需求的版本，或检出 git 源地址",
    )
    install_parser.add_argument(
        "requirement",
        help="版本需求（如 0.79、^0.79.1、latest）或 git 源地址",
    )

    cache_parser = subparsers.add_parser(
        "cache",
        help="管理版本缓存",
    )
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", title="缓存命令")

    available_parser = cache_subparsers.add_parser("available", help="列出可安装的发布")
    available_parser.add_argument("requirement", nargs="?", default=None, help="版本需求")
    available_parser.add_argument(
        "--cached",
        action="store_true",
        help="允许使用未过期的本地发布索引缓存",
    )

    cache_list_parser = cache_subparsers.add_parser("list", help="列出已安装的版本")
    cache_list_parser.add_argument("requirement", nargs="?", default=None, help="版本需求")

    cache_delete_parser = cache_subparsers.add_parser("delete", help="卸载指定版本")
    cache_delete_parser.add_argument("version", help="版本号")
    cache_delete_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="即使有环境使用该版本也卸载",
    )

    cache_reset_parser = cache_subparsers.add_parser("reset", help="清空版本缓存")
    cache_reset_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="即使有环境使用已缓存的版本也清空",
    )

    manage_parser = subparsers.add_parser(
        "manage",
        help="管理命名环境",
    )
    manage_subparsers = manage_parser.add_subparsers(dest="manage_command", title="环境命令")

    manage_create_parser = manage_subparsers.add_parser("create", help="创建环境")
    manage_create_parser.add_argument("alias", help="环境别名")
    manage_create_parser.add_argument("requirement", help="版本需求或 git 源地址")
    manage_create_parser.add_argument("grpc_url", help="环境使用的 gRPC 地址")
    manage_create_parser.add_argument(
        "--client-only",
        action="store_true",
        help="不包含节点（pd/CometBFT）",
    )
    manage_create_parser.add_argument(
        "--generate-network",
        action="store_true",
        help="为本地开发网络生成节点数据",
    )
    manage_create_parser.add_argument(
        "--pd-join-url",
        default=None,
        help="pd 加入网络使用的 CometBFT RPC 地址",
    )

    manage_list_parser = manage_subparsers.add_parser("list", help="列出环境")
    manage_list_parser.add_argument(
        "--detailed",
        "-d",
        action="store_true",
        help="显示详细信息",
    )

    for name, help_text in (("info", "显示环境详细信息"),
                            ("upgrade", "升级环境到满足需求的最新已安装版本"),
                            ("delete", "删除环境")):
        sub = manage_subparsers.add_parser(name, help=help_text)
        sub.add_argument("alias", help="环境别名")

    manage_reset_parser = manage_subparsers.add_parser("reset", help="重置环境的客户端和节点状态")
    manage_reset_parser.add_argument("alias", help="环境别名")
    manage_reset_parser.add_argument(
        "--leave-client-state",
        action="store_true",
        help="不重置 pcli 和 pclientd 的状态",
    )
    manage_reset_parser.add_argument(
        "--leave-node-state",
        action="store_true",
        help="不重置 pd 和 CometBFT 的状态",
    )

    use_parser = subparsers.add_parser(
        "use",
        help="激活环境",
    )
    use_parser.add_argument("alias", help="环境别名")

    subparsers.add_parser(
        "deactivate",
        help="取消激活当前环境",
    )

    which_parser = subparsers.add_parser(
        "which",
        help="显示当前激活的环境",
    )
    which_parser.add_argument(
        "--detailed",
        "-d",
        action="store_true",
        help="显示详细信息",
    )

    hook_parser = subparsers.add_parser(
        "hook",
        help="输出需要在 shell 配置中 eval 的钩子脚本",
    )
    hook_parser.add_argument("shell", help="shell 名称 (bash, zsh)")

    hook_env_parser = subparsers.add_parser(
        "hook-env",
        help="输出使 shell 与当前激活环境一致的命令（由钩子调用）",
    )
    hook_env_parser.add_argument("--shell", default="bash", help="shell 名称 (bash, zsh)")

    config_parser = subparsers.add_parser(
        "config",
        help="显示或编辑配置",
    )
    config_parser.add_argument(
        "--set",
        type=str,
        default=None,
        help="设置配置项 (KEY=VALUE)",
    )
    config_parser.add_argument(
        "--reset",
        action="store_true",
        help="恢复默认配置",
    )

    return parser


def run_cli(args: argparse.Namespace) -> int:
    """
    运行命令行接口。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码（0 表示成功）
    """
    if args.command is None:
        print("未指定命令。使用 --help 查看帮助信息。")
        return 1

    command_handlers = {
        "install": handle_install,
        "cache": handle_cache,
        "manage": handle_manage,
        "use": handle_use,
        "deactivate": handle_deactivate,
        "which": handle_which,
        "hook": handle_hook,
        "hook-env": handle_hook_env,
        "config": handle_config,
    }

    handler = command_handlers.get(args.command)
    if handler is None:
        print(f"未知命令: {args.command}")
        return 1

    try:
        return handler(args)
    except PenvError as e:
        logger.debug(f"命令 {args.command} 失败", exc_info=True)
        print(f"错误: {e}", file=sys.stderr)
        return 1


def _get_managers(args: argparse.Namespace) -> Tuple[ConfigManager, VersionManager]:
    """
    获取管理器实例。

    返回:
        包含 ConfigManager、VersionManager 的元组
    """
    config_manager = ConfigManager(getattr(args, "home", None))
    version_manager = VersionManager(config_manager)
    return config_manager, version_manager


class _ProgressPrinter:
    """汇总并发下载的各二进制进度，输出单行进度条。"""

    BAR_LEN = 40

    def __init__(self):
        self._lock = threading.Lock()
        self._progress: Dict[str, Tuple[int, int]] = {}

    def __call__(self, binary: str, downloaded: int, total: int) -> None:
        with self._lock:
            self._progress[binary] = (downloaded, total)
            done = sum(d for d, _ in self._progress.values())
            size = sum(t for _, t in self._progress.values())
            percent = int(done / size * 100) if size > 0 else 0
            filled = int(self.BAR_LEN * percent / 100)
            bar = "=" * filled + "-" * (self.BAR_LEN - filled)
            print(f"\r[{bar}] {percent}% ({done}/{size} 字节)", end="", flush=True)


def handle_install(args: argparse.Namespace) -> int:
    """
    处理 install 命令：下载并安装满足需求的版本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    _, version_manager = _get_managers(args)

    print(f"正在安装 {args.requirement}...")
    result = version_manager.install(args.requirement, _ProgressPrinter(), print)
    if isinstance(result, Checkout):
        print(f"\n已检出 {result.source_url} @ {result.resolved_commit[:12]}")
    else:
        print(f"\n成功安装 {result.version} 到 {result.root_dir}")
    return 0


def handle_cache(args: argparse.Namespace) -> int:
    """
    处理 cache 命令：查询可用发布、列出、卸载或清空已安装版本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    _, version_manager = _get_managers(args)
    command = args.cache_command

    if command == "available":
        releases = version_manager.available_releases(args.requirement, use_cache=args.cached)
        if not releases:
            print("没有可安装的发布")
            return 0
        for release, installed in releases:
            marks = []
            if installed:
                marks.append("已安装")
            if release.prerelease:
                marks.append("预发布")
            suffix = f" ({', '.join(marks)})" if marks else ""
            print(f"  {release.version}{suffix}")
        return 0

    if command == "list":
        entries = version_manager.list_installed(args.requirement)
        if not entries:
            print("没有已安装的版本")
            return 0
        for entry in entries:
            _print_cache_entry(entry)
        return 0

    if command == "delete":
        entry = version_manager.uninstall(args.version, force=args.force)
        print(f"成功卸载 {entry.version}")
        return 0

    if command == "reset":
        removed = version_manager.reset_cache(force=args.force)
        print(f"已清空版本缓存（删除 {len(removed)} 个版本）")
        return 0

    print("请指定缓存命令: available, list, delete, reset")
    return 1


def _print_cache_entry(entry: CacheEntry) -> None:
    print(f"  {entry.version}  {entry.installed_at}  {entry.root_dir}")


def handle_manage(args: argparse.Namespace) -> int:
    """
    处理 manage 命令：创建、列出、查看、升级、重置或删除环境。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    _, version_manager = _get_managers(args)
    command = args.manage_command

    if command == "create":
        options = EnvironmentOptions(
            include_node=not args.client_only,
            generate_network=args.generate_network,
            pd_join_url=args.pd_join_url,
        )
        environment = version_manager.create_environment(
            args.alias, args.requirement, args.grpc_url, options
        )
        print(f"已创建环境 {environment.alias}（{environment.pinned_version}）")
        print(f"  目录: {environment.root_directory}")
        return 0

    if command == "list":
        environments = version_manager.list_environments()
        if not environments:
            print("没有已创建的环境")
            return 0
        if args.detailed:
            details = [version_manager.describe_environment(env.alias) for env in environments]
            print(json.dumps(details, indent=2, ensure_ascii=False))
            return 0
        current = version_manager.current_environment()
        active = current.alias if current else None
        for env in environments:
            marker = " *" if env.alias == active else ""
            print(f"  {env.alias}{marker}  {env.pinned_version}  {env.grpc_url}")
        return 0

    if command == "info":
        info = version_manager.describe_environment(args.alias)
        print(json.dumps(info, indent=2, ensure_ascii=False))
        return 0

    if command == "upgrade":
        environment, previous = version_manager.upgrade_environment(args.alias)
        if previous is None:
            print(f"环境 {environment.alias} 已是最新（{environment.pinned_version}）")
        else:
            print(f"环境 {environment.alias} 已从 {previous} 升级到 {environment.pinned_version}")
        return 0

    if command == "reset":
        removed = version_manager.reset_environment(
            args.alias, args.leave_client_state, args.leave_node_state
        )
        for path in removed:
            print(f"  已删除 {path}")
        print(f"已重置环境 {args.alias}")
        return 0

    if command == "delete":
        version_manager.delete_environment(args.alias)
        print(f"已删除环境 {args.alias}")
        return 0

    print("请指定环境命令: create, list, info, upgrade, reset, delete")
    return 1


def handle_use(args: argparse.Namespace) -> int:
    """
    处理 use 命令：激活环境。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    _, version_manager = _get_managers(args)
    environment = version_manager.use(args.alias)
    print(f"已激活环境 {environment.alias}（{environment.pinned_version}）")
    return 0


def handle_deactivate(args: argparse.Namespace) -> int:
    """处理 deactivate 命令：取消激活当前环境。"""
    _, version_manager = _get_managers(args)
    previous = version_manager.deactivate()
    if previous is None:
        print("当前没有激活的环境")
    else:
        print(f"已取消激活环境 {previous}")
    return 0


def handle_which(args: argparse.Namespace) -> int:
    """
    处理 which 命令：显示当前激活的环境。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码，未激活任何环境时为 1
    """
    _, version_manager = _get_managers(args)
    environment = version_manager.current_environment()
    if environment is None:
        print("当前没有激活的环境")
        return 1
    if args.detailed:
        info = version_manager.describe_environment(environment.alias)
        print(json.dumps(info, indent=2, ensure_ascii=False))
    else:
        print(environment.alias)
    return 0


def _penv_command(config_manager: ConfigManager) -> List[str]:
    """获取 shell 钩子调用 penv 时使用的命令行。"""
    executable = shutil.which("penv")
    command = [executable] if executable else [sys.executable, "-m", "penv.main"]
    return command + ["--home", str(config_manager.home)]


def handle_hook(args: argparse.Namespace) -> int:
    """
    处理 hook 命令：输出 shell 钩子脚本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    config_manager, version_manager = _get_managers(args)
    print(version_manager.hook_script(args.shell, _penv_command(config_manager)), end="")
    return 0


def handle_hook_env(args: argparse.Namespace) -> int:
    """
    处理 hook-env 命令：输出使 shell 与激活状态一致的命令。

    状态未变化时不输出任何内容。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    _, version_manager = _get_managers(args)
    commands = version_manager.hook_env(args.shell)
    if commands:
        print(commands)
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """
    处理 config 命令：显示或编辑配置。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    config_manager = ConfigManager(getattr(args, "home", None))

    if args.reset:
        config_manager.reset_to_default()
        print("已恢复默认配置")
        return 0

    if args.set:
        key, _, value = args.set.partition("=")
        key = key.strip()
        if not key or not value:
            print("格式无效。请使用: KEY=VALUE")
            return 1

        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = value

        config_manager.set_setting(key, parsed)
        print(f"已设置 {key} = {parsed}")
        return 0

    print(json.dumps(config_manager.get_config(), indent=2, ensure_ascii=False))
    return 0
