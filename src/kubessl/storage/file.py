"""
本地文件系统存储后端。
"""

from __future__ import annotations

import os
import posixpath
from pathlib import Path

from loguru import logger

from src.kubessl.errors import NotFound, WriteError
from .base import StorageDriver


class FileStorage(StorageDriver):
    """
    以目录为根的文件存储。
    :param root_path: 根目录。
    :param make_root: 根目录不存在时是否创建。
    :param make_dirs: 中间目录不存在时是否创建。
    """

    def __init__(
        self,
        root_path: str | os.PathLike,
        make_root: bool = True,
        make_dirs: bool = True,
        root_dir_mode: int = 0o755,
        dir_mode: int = 0o755,
        file_mode: int = 0o600,
    ):
        self.root_path = Path(root_path)
        self.make_root = make_root
        self.make_dirs = make_dirs
        self.root_dir_mode = root_dir_mode
        self.dir_mode = dir_mode
        self.file_mode = file_mode

    def _full_path(self, path: str) -> Path:
        # 逻辑路径统一去掉开头的 /，并拒绝跳出根目录
        normalized = posixpath.normpath("/" + path.lstrip("/")).lstrip("/")
        if not normalized or normalized == ".":
            raise ValueError(f"无效的存储路径: {path!r}")
        return self.root_path.joinpath(*normalized.split("/"))

    @staticmethod
    def _check_make_dir(directory: Path, make_it: bool, mode: int) -> None:
        if directory.is_dir():
            return
        if not make_it:
            raise WriteError(f"目录不存在且配置为不创建: {directory}")
        try:
            directory.mkdir(mode=mode, parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError(f"无法创建目录 {directory}: {e}") from e

    def read(self, path: str) -> bytes:
        full_path = self._full_path(path)
        if not full_path.is_file():
            raise NotFound(f"无法读取文件: {full_path}")
        try:
            return full_path.read_bytes()
        except OSError as e:
            raise NotFound(f"无法读取文件 {full_path}: {e}") from e

    def write(self, path: str, data: bytes) -> None:
        full_path = self._full_path(path)
        self._check_make_dir(self.root_path, self.make_root, self.root_dir_mode)
        self._check_make_dir(full_path.parent, self.make_dirs, self.dir_mode)
        try:
            fd = os.open(full_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, self.file_mode)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            # 已存在的文件不会应用 open 的 mode，这里统一修正
            os.chmod(full_path, self.file_mode)
        except OSError as e:
            raise WriteError(f"写入文件失败 {full_path}: {e}") from e
        logger.debug(f"已写入 {full_path} ({len(data)} bytes)")
