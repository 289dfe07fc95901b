"""
版本工具模块。

提供需求字符串解析、版本排序和版本解析（从候选集合中选出满足需求的最大版本）功能。

需求语法:
    - semver 范围：^0.79、~0.79.1、=0.79.2、>=0.79, <0.81、0.79.x
    - 裸版本号或前缀（0.79、0.79.1）按 ^ 处理，即最紧的兼容范围
    - latest：最大的正式版本
    - git 源地址（https://、git://、ssh://、file://、git@host:path 或 .git 结尾），
      自身即为版本空间
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

import semantic_version

from penv.core.models import is_git_version
from penv.utils.errors import PenvError
from penv.utils.logger import get_logger

logger = get_logger()

LATEST = "latest"

GIT_URL_PATTERN = re.compile(r'^(?:https?|git|ssh|file)://', re.IGNORECASE)
SCP_LIKE_PATTERN = re.compile(r'^[\w.-]+@[\w.-]+:[^/\\]')
BARE_VERSION_PATTERN = re.compile(
    r'^v?\d+(?:\.\d+){0,2}(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$'
)
V_PREFIX_PATTERN = re.compile(r'(^|[\s<>=~^])v(?=\d)')


class VersionResolveError(PenvError):
    """版本解析错误异常。"""
    pass


class InvalidRequirementError(VersionResolveError):
    """需求字符串无法解析异常。"""
    pass


class VersionNotFoundError(VersionResolveError):
    """没有候选版本满足需求异常。"""
    pass


def is_git_locator(text: str) -> bool:
    """
    判断字符串是否为 git 源地址。

    参数:
        text: 需求字符串

    返回:
        是 git 地址返回 True
    """
    text = text.strip()
    return bool(
        GIT_URL_PATTERN.match(text)
        or SCP_LIKE_PATTERN.match(text)
        or text.endswith(".git")
    )


def parse_version(version_str: str) -> Optional[semantic_version.Version]:
    """
    解析版本字符串，允许前缀 v。

    参数:
        version_str: 版本字符串

    返回:
        Version 对象，无法解析时返回 None
    """
    text = version_str.strip()
    if text.startswith("v"):
        text = text[1:]
    try:
        return semantic_version.Version(text)
    except ValueError:
        return None


def _normalize_range(text: str) -> str:
    """把需求文本转换为 NpmSpec 可以接受的写法。"""
    text = text.strip()
    if BARE_VERSION_PATTERN.match(text):
        text = "^" + text
    text = V_PREFIX_PATTERN.sub(r"\1", text)
    return " ".join(part.strip() for part in text.split(",") if part.strip())


@dataclass(frozen=True)
class Requirement:
    """
    已解析的版本需求。

    kind 取值为 range、latest 或 git；range 类型持有对应的 NpmSpec。
    """

    text: str
    kind: str
    spec: Optional[semantic_version.NpmSpec] = None

    @property
    def is_git(self) -> bool:
        return self.kind == "git"

    def matches(self, version: semantic_version.Version) -> bool:
        """
        判断版本是否满足需求。

        参数:
            version: 候选版本

        返回:
            满足返回 True；git 需求对任何发布版本都返回 False
        """
        if self.kind == LATEST:
            return not version.prerelease
        if self.spec is not None:
            return self.spec.match(version)
        return False

    def __str__(self) -> str:
        return self.text


def parse_requirement(text: str) -> Requirement:
    """
    解析需求字符串。

    参数:
        text: 用户输入的需求

    返回:
        Requirement 对象

    抛出:
        InvalidRequirementError: 既不是合法范围也不是 git 地址
    """
    if text is None or not text.strip():
        raise InvalidRequirementError("版本需求不能为空")

    text = text.strip()
    if is_git_locator(text):
        return Requirement(text=text, kind="git")
    if text.lower() == LATEST:
        return Requirement(text=LATEST, kind=LATEST)

    try:
        spec = semantic_version.NpmSpec(_normalize_range(text))
    except ValueError as e:
        raise InvalidRequirementError(f"无效的版本需求 '{text}': {e}") from e
    return Requirement(text=text, kind="range", spec=spec)


def sort_versions_desc(versions: Iterable[str]) -> List[str]:
    """
    按 semver 顺序降序排列版本字符串，无法解析的版本被丢弃。

    参数:
        versions: 版本字符串

    返回:
        排序后的版本列表
    """
    parsed = []
    for v in versions:
        version = parse_version(v)
        if version is None:
            if not is_git_version(v):
                logger.debug(f"忽略无法解析的版本: {v}")
            continue
        parsed.append((version, v))
    parsed.sort(key=lambda item: item[0], reverse=True)
    return [v for _, v in parsed]


def matching_versions(requirement: Requirement, candidates: Iterable[str]) -> List[str]:
    """
    筛选满足需求的候选版本。

    参数:
        requirement: 版本需求
        candidates: 候选版本字符串

    返回:
        满足需求的版本，按降序排列
    """
    if requirement.is_git:
        return []
    return [
        v for v in sort_versions_desc(candidates)
        if requirement.matches(parse_version(v))
    ]


def resolve(requirement: Requirement, candidates: Iterable[str]) -> str:
    """
    从候选集合中解析出满足需求的最大版本。

    git 需求按身份解析，直接返回地址本身；实际提交在检出时才确定。

    参数:
        requirement: 版本需求
        candidates: 候选版本字符串（已安装版本或发布索引中的版本）

    返回:
        解析出的版本字符串

    抛出:
        VersionNotFoundError: 没有候选版本满足需求
    """
    if requirement.is_git:
        return requirement.text

    matches = matching_versions(requirement, candidates)
    if not matches:
        raise VersionNotFoundError(f"没有版本满足需求 '{requirement}'")

    logger.debug(f"需求 '{requirement}' 解析为 {matches[0]}")
    return matches[0]
