"""
penv 应用程序主入口点。
"""

import logging
import sys
from typing import Optional

from penv.cli import create_parser, run_cli
from penv.core.config_manager import ConfigManager
from penv.utils.logger import level_from_env, setup_logger

QUIET_COMMANDS = ("hook", "hook-env")


def main(args: Optional[list[str]] = None) -> int:
    """
    应用程序主入口点。

    参数:
        args: 命令行参数。如果为 None，将使用 sys.argv[1:]。

    返回:
        退出码（0 表示成功，非零表示错误）。
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    level = logging.DEBUG if parsed_args.verbose else level_from_env()
    if parsed_args.command in QUIET_COMMANDS:
        setup_logger(level=level)
    else:
        home = ConfigManager(parsed_args.home).home
        setup_logger(level=level, log_to_file=True, log_dir=home / "logs")

    return run_cli(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
