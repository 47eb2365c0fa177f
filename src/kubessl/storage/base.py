"""
存储端口：按逻辑路径读写字节块的最小契约，以及按 URL 选择后端的工厂方法。
"""

from __future__ import annotations

import abc
from urllib.parse import urlparse

from loguru import logger

from src.kubessl.errors import StorageError


class StorageDriver(abc.ABC):
    """
    存储后端的抽象基类。
    路径为以 / 分隔的逻辑路径，相对于后端配置的根目录。
    """

    @abc.abstractmethod
    def read(self, path: str) -> bytes:
        """
        读取路径对应的内容。
        :raises NotFound: 路径不存在。
        """

    @abc.abstractmethod
    def write(self, path: str, data: bytes) -> None:
        """
        写入内容，默认创建缺失的中间目录并覆盖已有内容。
        :raises WriteError: 写入失败。
        """


def get_storage(storage_url: str) -> StorageDriver:
    """
    根据 URL 返回对应的存储后端。
    缺少 scheme 或 scheme 为 file 时使用本地文件系统。
    :param storage_url: 存储位置，例如 "outputs/system" 或 "file:///srv/pki"。
    :raises StorageError: 未知的 scheme，或 file URL 带有主机部分。
    """
    # 延迟导入，避免 file 模块反向依赖时的循环导入
    from .file import FileStorage

    parsed = urlparse(storage_url)
    if parsed.scheme in ("", "file"):
        if parsed.netloc not in ("", "localhost"):
            # file://relative/pki 会被解析为主机 relative 与路径 /pki
            raise StorageError(f"文件存储不支持主机部分 {parsed.netloc!r}，请使用 file:///绝对路径: {storage_url!r}")
        logger.debug(f"使用文件存储: {parsed.path}")
        return FileStorage(parsed.path)
    raise StorageError(f"未知的存储类型: {storage_url!r}")
