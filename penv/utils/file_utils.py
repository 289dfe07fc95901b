"""
文件操作工具模块。

提供原子写入 JSON、原子替换符号链接、摘要计算和安全解压等功能。
所有持久化状态的修改都通过"写临时文件再 os.replace"完成，读者只会看到旧状态或新状态。
"""

import hashlib
import json
import os
import stat
import tarfile
import uuid
from pathlib import Path
from typing import Any, Optional

from penv.utils.logger import get_logger

logger = get_logger()

CHUNK_SIZE = 64 * 1024


def atomic_save_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """
    原子保存 JSON 数据到文件，防止写入中断导致文件损坏。

    参数:
        file_path: 目标文件路径
        data: 要保存的数据
        indent: JSON 缩进
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = file_path.with_name(f".{file_path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")

    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, file_path)
    except BaseException:
        if temp_path.exists():
            temp_path.unlink()
        raise


def load_json(file_path: Path, default: Any) -> Any:
    """
    读取 JSON 文件。

    参数:
        file_path: 文件路径
        default: 文件不存在时返回的默认值

    返回:
        解析后的数据
    """
    if not file_path.exists():
        return default
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def atomic_symlink(target: Path, link_path: Path) -> None:
    """
    原子地把 link_path 指向 target。

    先在同一目录下创建临时符号链接，再用 os.replace 覆盖原链接，
    任何时刻 link_path 要么指向旧目标，要么指向新目标。

    参数:
        target: 链接目标
        link_path: 链接位置
    """
    link_path.parent.mkdir(parents=True, exist_ok=True)
    temp_link = link_path.with_name(f".{link_path.name}.{uuid.uuid4().hex}.tmp")
    os.symlink(target, temp_link)
    try:
        os.replace(temp_link, link_path)
    except BaseException:
        if os.path.lexists(temp_link):
            os.unlink(temp_link)
        raise


def read_symlink(link_path: Path) -> Optional[Path]:
    """
    读取符号链接目标。

    参数:
        link_path: 链接位置

    返回:
        链接目标；不是符号链接时返回 None
    """
    if not link_path.is_symlink():
        return None
    return Path(os.readlink(link_path))


def remove_link(link_path: Path) -> bool:
    """
    删除符号链接（不跟随链接）。

    参数:
        link_path: 链接位置

    返回:
        存在并已删除返回 True
    """
    if os.path.lexists(link_path):
        os.unlink(link_path)
        return True
    return False


def sha256_file(file_path: Path) -> str:
    """
    计算文件的 sha256 摘要。

    参数:
        file_path: 文件路径

    返回:
        十六进制摘要
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def make_executable(file_path: Path) -> None:
    """为文件添加可执行权限。"""
    mode = file_path.stat().st_mode
    file_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def extract_member(archive_path: Path, member_name: str, dest_path: Path) -> None:
    """
    从 tar.gz 压缩包中取出单个文件，防止路径遍历漏洞。

    按文件名匹配成员（忽略压缩包内的目录前缀），只接受普通文件。

    参数:
        archive_path: 压缩包路径
        member_name: 要取出的文件名
        dest_path: 输出文件路径

    抛出:
        FileNotFoundError: 压缩包中没有该文件
        ValueError: 成员路径非法
    """
    with tarfile.open(archive_path, "r:gz") as tf:
        for member in tf.getmembers():
            name = member.name
            if name.startswith("/") or ".." in Path(name).parts:
                raise ValueError(f"压缩包包含非法路径: {name}")
            if not member.isfile() or Path(name).name != member_name:
                continue

            source = tf.extractfile(member)
            if source is None:
                continue
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with source, open(dest_path, "wb") as out:
                for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                    out.write(chunk)
            logger.debug(f"已从 {archive_path.name} 解压 {name} 到 {dest_path}")
            return

    raise FileNotFoundError(f"压缩包 {archive_path} 中未找到 {member_name}")
