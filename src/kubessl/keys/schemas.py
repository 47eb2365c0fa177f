"""
非证书密钥对（如 service account 签名密钥）的数据模型定义。
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from src.kubessl.certs.schemas import CertState


class KeyPairTemplate(BaseModel):
    """密钥对模板，存储在 global/<path>.key 与 global/<path>.pub。"""

    model_config = ConfigDict(frozen=True)

    path: str
    key_type: str = ""


class KeyPairDescriptor(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    template_idx: int
    read_path: str
    write_path: str

    key: Any = None
    key_priv_pem: bytes | None = None
    key_pub_pem: bytes | None = None
    failed: str = ""
    state: CertState = CertState.UNCHECKED
