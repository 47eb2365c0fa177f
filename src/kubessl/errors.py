"""
kubessl 的异常类型定义。

所有异常都继承自 KubesslError，命令行入口据此映射退出码：
- InvalidTopologyInput / TemplateRegistryError: 输入或配置错误，在任何加密操作前终止
- StorageError (NotFound / WriteError): 存储读写失败
- KeyGenerationError / CertificateEncodingError: 加密操作失败
- PolicyViolationError: 证书校验失败且不允许覆盖
- ReconcileError: 调和过程中的内部不变量被破坏
"""

from __future__ import annotations


class KubesslError(Exception):
    """kubessl 所有异常的基类。"""


class InvalidTopologyInput(KubesslError, ValueError):
    """集群拓扑输入格式错误。"""


class TemplateRegistryError(KubesslError, ValueError):
    """证书模板目录不满足排序或引用约束。"""


class StorageError(KubesslError):
    """存储后端错误。"""


class NotFound(StorageError):
    """读取的路径不存在。"""


class WriteError(StorageError):
    """写入失败。"""


class KeyGenerationError(KubesslError, RuntimeError):
    """私钥生成失败。"""


class CertificateEncodingError(KubesslError, RuntimeError):
    """证书签发或 PEM 编码失败。"""


class ReconcileError(KubesslError, RuntimeError):
    """调和顺序被破坏（例如叶子证书先于其 CA 处理）。"""


class PolicyViolationError(KubesslError):
    """
    校验失败且当前策略禁止覆盖。
    :param kind: 产物类型，"CRT" 或 "KEY"。
    :param path: 模板路径。
    :param node: 节点名称，全局产物为空字符串。
    :param reason: 校验失败原因。
    """

    def __init__(self, kind: str, path: str, node: str, reason: str):
        self.kind = kind
        self.path = path
        self.node = node
        self.reason = reason
        where = f"{node}:{path}" if node else path
        super().__init__(f"{kind} 校验失败且禁止覆盖: [{where}] => {reason}")
