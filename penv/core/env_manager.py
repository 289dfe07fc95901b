"""
Shell 环境变量管理器模块。

提供 shell 钩子协议：根据 shell 当前导出的激活标记和真实的激活状态，
生成使两者一致所需的 export/unset 命令；以及安装到 shell 配置中的钩子脚本。
"""

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict

from penv.core.models import Environment
from penv.utils.input_validator import InputValidator
from penv.utils.logger import get_logger

logger = get_logger()

MARKER_VAR = "PENV_ACTIVE_ENVIRONMENT"
ENDPOINT_VAR = "PENUMBRA_NODE_PD_URL"
BINARY_HOME_VARS = {
    "pcli": "PENUMBRA_PCLI_HOME",
    "pclientd": "PENUMBRA_PCLIENTD_HOME",
    "pd": "PENUMBRA_PD_HOME",
}
COMETBFT_HOME_VAR = "COMETBFT_HOME"
PD_JOIN_URL_VAR = "PENUMBRA_PD_JOIN_URL"
PD_PROXY_URL_VAR = "PENUMBRA_PD_COMETBFT_PROXY_URL"
NODE_VARS = (BINARY_HOME_VARS["pd"], COMETBFT_HOME_VAR, PD_JOIN_URL_VAR, PD_PROXY_URL_VAR)

MANAGED_VARS = (
    MARKER_VAR,
    BINARY_HOME_VARS["pcli"],
    BINARY_HOME_VARS["pclientd"],
    *NODE_VARS,
    ENDPOINT_VAR,
)

BASH_HOOK = """\
case ":$PATH:" in
  *:{bin_dir}:*) ;;
  *) export PATH={bin_dir}:"$PATH" ;;
esac
_penv_hook() {{
  local previous_exit_status=$?
  eval "$({command} hook-env --shell bash)"
  return $previous_exit_status
}}
if [[ ";${{PROMPT_COMMAND:-}};" != *";_penv_hook;"* ]]; then
  PROMPT_COMMAND="_penv_hook${{PROMPT_COMMAND:+;$PROMPT_COMMAND}}"
fi
"""

ZSH_HOOK = """\
case ":$PATH:" in
  *:{bin_dir}:*) ;;
  *) export PATH={bin_dir}:"$PATH" ;;
esac
_penv_hook() {{
  eval "$({command} hook-env --shell zsh)"
}}
typeset -ag precmd_functions
if (( ! ${{precmd_functions[(I)_penv_hook]}} )); then
  precmd_functions=(_penv_hook $precmd_functions)
fi
"""

HOOK_TEMPLATES = {"bash": BASH_HOOK, "zsh": ZSH_HOOK}


@dataclass(frozen=True)
class EnvChange:
    """一条环境变量修改，value 为 None 表示 unset。"""

    name: str
    value: Optional[str]


class EnvManager:
    """
    Shell 环境变量管理器类。

    受管理的变量集合是固定的：激活标记、每个二进制的数据目录、节点相关变量和远程地址。
    不包含节点的环境会 unset 节点变量，而不是导出空值。
    """

    def environment_variables(self, environment: Optional[Environment]) -> Dict[str, Optional[str]]:
        """
        计算环境对应的全部受管理变量。

        参数:
            environment: 当前激活的环境，None 表示未激活

        返回:
            变量名到值的映射，值为 None 的变量需要 unset
        """
        variables: Dict[str, Optional[str]] = {name: None for name in MANAGED_VARS}
        if environment is None:
            return variables

        variables[MARKER_VAR] = environment.alias
        variables[ENDPOINT_VAR] = environment.grpc_url
        for binary in ("pcli", "pclientd"):
            variables[BINARY_HOME_VARS[binary]] = str(environment.binary_home(binary))

        if environment.include_node:
            variables[BINARY_HOME_VARS["pd"]] = str(environment.binary_home("pd"))
            variables[COMETBFT_HOME_VAR] = str(environment.cometbft_home)
            variables[PD_JOIN_URL_VAR] = environment.pd_join_url
            variables[PD_PROXY_URL_VAR] = environment.pd_join_url
        return variables

    def compute_changes(
        self,
        marker: Optional[str],
        environment: Optional[Environment]
    ) -> List[EnvChange]:
        """
        计算使 shell 状态与激活状态一致所需的修改。

        标记与当前激活的别名相同时返回空列表。

        参数:
            marker: shell 当前导出的激活标记
            environment: 当前激活的环境

        返回:
            EnvChange 列表
        """
        current = environment.alias if environment is not None else None
        if (marker or None) == current:
            return []

        logger.debug(f"激活标记 {marker!r} 与当前环境 {current!r} 不一致，更新 shell 变量")
        return [
            EnvChange(name, value)
            for name, value in self.environment_variables(environment).items()
        ]

    def render(self, changes: List[EnvChange], shell: str) -> str:
        """
        把修改渲染为可 eval 的 shell 命令。

        参数:
            changes: EnvChange 列表
            shell: 目标 shell（bash/zsh 语法相同）

        返回:
            shell 命令文本，没有修改时为空字符串
        """
        InputValidator.validate_shell(shell)
        lines = []
        for change in changes:
            if change.value is None:
                lines.append(f"unset {change.name};")
            else:
                lines.append(f"export {change.name}={shlex.quote(change.value)};")
        return "\n".join(lines)

    def hook_script(self, shell: str, command: List[str], bin_dir: Path) -> str:
        """
        生成安装到 shell 配置中的钩子脚本。

        参数:
            shell: 目标 shell
            command: 调用 penv 的命令行（含 --home）
            bin_dir: 当前激活二进制的稳定链接位置

        返回:
            钩子脚本文本
        """
        shell = InputValidator.validate_shell(shell)
        return HOOK_TEMPLATES[shell].format(
            command=" ".join(shlex.quote(part) for part in command),
            bin_dir=shlex.quote(str(bin_dir)),
        )
