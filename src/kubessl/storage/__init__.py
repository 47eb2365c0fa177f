"""
证书与密钥的存储后端集合。

目前只实现了本地文件系统后端，其他后端按 URL scheme 通过 get_storage 扩展。
"""

from .base import StorageDriver, get_storage
from .file import FileStorage

__all__ = [
    "StorageDriver",
    "get_storage",
    "FileStorage",
]
