"""
证书模板、证书描述符与调和结果的数据模型定义。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Tuple

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID
from pydantic import BaseModel, ConfigDict, Field, model_validator


class KeyUsageIntent(str, Enum):
    """证书的扩展密钥用途。"""

    SERVER_AUTH = "server_auth"
    CLIENT_AUTH = "client_auth"

    @property
    def oid(self) -> x509.ObjectIdentifier:
        if self is KeyUsageIntent.SERVER_AUTH:
            return ExtendedKeyUsageOID.SERVER_AUTH
        return ExtendedKeyUsageOID.CLIENT_AUTH


class CertState(str, Enum):
    """单个证书（或密钥对）在一次调和中的状态。"""

    UNCHECKED = "unchecked"
    LOADING = "loading"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"
    KEPT = "kept"
    REGENERATED = "regenerated"

    @property
    def terminal(self) -> bool:
        return self in (CertState.KEPT, CertState.REGENERATED)


class CertificateTemplate(BaseModel):
    """
    静态定义的证书模板。
    parent 为空表示 CA；nodes 为空表示与拓扑无关，只渲染一次。
    common_name / organization 中的 {node_name} 会被替换为节点名称。
    """

    model_config = ConfigDict(frozen=True)

    path: str
    parent: str = ""
    nodes: Tuple[str, ...] = ()
    common_name: str
    organization: str = ""
    node_sans: bool = False
    api_sans: bool = False
    extra_sans: Tuple[str, ...] = ()
    usages: Tuple[KeyUsageIntent, ...] = ()
    # 空字符串表示 RSA，否则为椭圆曲线名称（P256 / P384 / P521）
    key_type: str = ""

    @property
    def is_authority(self) -> bool:
        return self.parent == ""


class ReconcilePolicy(BaseModel):
    """
    已有产物的处理策略。
    force_regen: 跳过加载，全部重新生成。
    overwrite: 校验失败时允许重新生成并覆盖；为 False 时校验失败将终止运行。
    """

    model_config = ConfigDict(frozen=True)

    force_regen: bool = False
    overwrite: bool = True

    def may_write(self) -> bool:
        return self.force_regen or self.overwrite


class IssueSettings(BaseModel):
    """签发参数：RSA 位数、证书有效期与剩余有效期下限（天）。"""

    model_config = ConfigDict(frozen=True)

    rsa_key_size: int = 2048
    validity_days: int = 3650
    min_remaining_days: int = 10

    @model_validator(mode="after")
    def check_validity_window(self) -> "IssueSettings":
        if self.validity_days <= 0 or not 0 <= self.min_remaining_days < self.validity_days:
            raise ValueError("需要 validity_days > 0 且 0 <= min_remaining_days < validity_days")
        return self


class SubjectAltNames(BaseModel):
    """按规范顺序排列的 SAN：DNS 名称按字典序，IP 按版本与数值排序。"""

    model_config = ConfigDict(frozen=True)

    dns_names: Tuple[str, ...] = ()
    ip_addresses: Tuple[str, ...] = ()

    def all(self) -> List[str]:
        return list(self.dns_names) + list(self.ip_addresses)


class CertificateDescriptor(BaseModel):
    """
    由模板与拓扑得到的具体证书描述，调和过程中原地更新。
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    node: str = ""
    common_name: str
    organization: List[str] = Field(default_factory=list)
    sans: SubjectAltNames = Field(default_factory=SubjectAltNames)
    template_idx: int
    read_path: str
    write_path: str

    # 以下字段由调和引擎填充
    cert: x509.Certificate | None = None
    cert_pem: bytes | None = None
    key: Any = None
    key_pem: bytes | None = None
    failed: str = ""
    state: CertState = CertState.UNCHECKED


class Outcome(BaseModel):
    """
    单个证书或密钥的调和结果，用于输出 OK / ERROR / WRITTEN 行。
    """

    model_config = ConfigDict(frozen=True)

    kind: str  # "CRT" 或 "KEY"
    node: str
    path: str
    state: CertState
    reason: str = ""

    def lines(self) -> List[str]:
        """生成与状态对应的可读输出行。"""
        where = f"[{self.node:<30}] [{self.path:<50}]"
        result = []
        if self.reason:
            result.append(f"{self.kind} ERROR  : {where} => \"{self.reason}\"")
        if self.state is CertState.REGENERATED:
            result.append(f"{self.kind} WRITTEN: {where}")
        elif self.state is CertState.KEPT:
            result.append(f"{self.kind} OK     : {where}")
        return result
