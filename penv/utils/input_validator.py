"""
输入验证模块。

提供环境别名、gRPC 地址、版本号和 shell 名称等用户输入的验证功能。
"""

import os
import re
from urllib.parse import urlparse

from penv.utils.errors import PenvError
from penv.utils.logger import get_logger

logger = get_logger()


class InputValidationError(PenvError):
    """输入验证错误异常。"""
    pass


class InputValidator:
    """
    输入验证器类。

    别名会直接成为目录名，因此只允许安全的文件名字符。
    """

    ALIAS_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
    VERSION_PATTERN = re.compile(r'^v?[0-9A-Za-z.+-]+$')
    MAX_ALIAS_LENGTH = 64
    MAX_VERSION_LENGTH = 100
    SUPPORTED_SHELLS = ("bash", "zsh")
    URL_SCHEMES = ("http", "https")

    @classmethod
    def validate_alias(cls, alias: str) -> str:
        """
        验证环境别名的有效性。

        参数:
            alias: 环境别名

        返回:
            去除首尾空白后的别名

        抛出:
            InputValidationError: 别名为空、过长或包含非法字符
        """
        if not alias or not alias.strip():
            raise InputValidationError("环境别名不能为空")

        alias = alias.strip()

        if len(alias) > cls.MAX_ALIAS_LENGTH:
            raise InputValidationError(f"环境别名不能超过 {cls.MAX_ALIAS_LENGTH} 个字符")

        if not cls.ALIAS_PATTERN.match(alias):
            raise InputValidationError(
                f"环境别名 '{alias}' 无效：只能包含字母、数字、点、下划线和连字符，且不能以符号开头"
            )

        return alias

    @classmethod
    def validate_version_string(cls, version: str) -> str:
        """
        验证版本号字符串的有效性。

        参数:
            version: 版本号字符串

        返回:
            去除首尾空白和前缀 v 后的版本号
        """
        if not version or not version.strip():
            raise InputValidationError("版本号不能为空")

        version = version.strip()
        if len(version) > cls.MAX_VERSION_LENGTH:
            raise InputValidationError(f"版本号不能超过 {cls.MAX_VERSION_LENGTH} 个字符")

        if not cls.VERSION_PATTERN.match(version):
            raise InputValidationError(f"版本号格式无效: {version}")

        return version[1:] if version.startswith("v") else version

    @classmethod
    def validate_url(cls, url: str) -> str:
        """
        验证 http(s) URL 的有效性。

        参数:
            url: URL 字符串

        返回:
            去除首尾空白后的 URL
        """
        if not url or not url.strip():
            raise InputValidationError("URL 不能为空")

        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in cls.URL_SCHEMES or not parsed.hostname:
            raise InputValidationError(f"URL 格式无效: {url}")

        try:
            parsed.port
        except ValueError as e:
            raise InputValidationError(f"URL 端口无效: {url}") from e

        return url

    @classmethod
    def validate_shell(cls, shell: str) -> str:
        """
        验证 shell 名称。

        参数:
            shell: shell 名称或路径（如 /bin/zsh）

        返回:
            规范化后的 shell 名称
        """
        name = os.path.basename((shell or "").strip())
        if name not in cls.SUPPORTED_SHELLS:
            raise InputValidationError(
                f"不支持的 shell: {shell}（支持: {', '.join(cls.SUPPORTED_SHELLS)}）"
            )
        return name
