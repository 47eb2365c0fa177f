"""
密钥对调和：加载 -> 解析私钥 -> 校验公私钥一致 -> 保留或重新生成。
"""

from __future__ import annotations

import posixpath
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from src.kubessl.certs import core
from src.kubessl.certs.identity import GLOBAL_PATH
from src.kubessl.certs.schemas import CertState, IssueSettings, Outcome, ReconcilePolicy
from src.kubessl.certs.services import REASON_FORCE, Reporter
from src.kubessl.errors import PolicyViolationError, StorageError
from src.kubessl.storage import StorageDriver
from .schemas import KeyPairDescriptor, KeyPairTemplate

REASON_LOAD_PRIVATE = "error loading private key"
REASON_LOAD_PUBLIC = "error loading public key"
REASON_PARSE = "error parsing private key"
REASON_MISMATCH = "public and private keys do not match"

PRIVATE_EXT = ".key"
PUBLIC_EXT = ".pub"

DEFAULT_KEY_TEMPLATES: Tuple[KeyPairTemplate, ...] = (
    KeyPairTemplate(path="/etc/kubernetes/pki/sa"),
)


def render_keys(templates: Sequence[KeyPairTemplate]) -> List[KeyPairDescriptor]:
    """密钥对总是全局的，读写路径均位于 global/ 下。"""
    descriptors = []
    for idx, tpl in enumerate(templates):
        path = posixpath.join(GLOBAL_PATH, tpl.path.lstrip("/"))
        descriptors.append(KeyPairDescriptor(template_idx=idx, read_path=path, write_path=path))
    return descriptors


class KeyPairReconciler:
    """
    与证书调和器相同的策略语义，作用于不带证书的密钥对。
    """

    kind = "KEY"

    def __init__(
        self,
        reader: StorageDriver,
        writer: StorageDriver,
        policy: ReconcilePolicy,
        settings: IssueSettings,
        templates: Sequence[KeyPairTemplate] = DEFAULT_KEY_TEMPLATES,
        report: Optional[Reporter] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.policy = policy
        self.settings = settings
        self.templates = tuple(templates)
        self.descriptors = render_keys(self.templates)
        self.report = report
        self.changed = False
        self.outcomes: List[Outcome] = []

    def run(self) -> List[Outcome]:
        for key in self.descriptors:
            self.reconcile(key)
        return self.outcomes

    def reconcile(self, key: KeyPairDescriptor) -> None:
        tpl = self.templates[key.template_idx]

        if self.policy.force_regen:
            self._fail(key, REASON_FORCE)
        else:
            self._load(key)
            if not key.failed:
                self._validate(key)

        if not key.failed:
            key.state = CertState.KEPT
        elif self.policy.may_write():
            logger.info(f"密钥对需要重新生成: {key.write_path} ({key.failed})")
            self._regenerate(key, tpl)
            key.state = CertState.REGENERATED
            self.changed = True
        else:
            self._emit(key, tpl.path)
            logger.error(f"密钥对校验失败且禁止覆盖: {key.read_path} ({key.failed})")
            raise PolicyViolationError(self.kind, tpl.path, "", key.failed)

        self._emit(key, tpl.path)

    def _fail(self, key: KeyPairDescriptor, reason: str) -> None:
        key.failed = reason
        key.state = CertState.INVALID

    def _load(self, key: KeyPairDescriptor) -> None:
        key.state = CertState.LOADING
        try:
            key.key_priv_pem = self.reader.read(key.read_path + PRIVATE_EXT)
        except StorageError:
            self._fail(key, REASON_LOAD_PRIVATE)
            return
        try:
            key.key_pub_pem = self.reader.read(key.read_path + PUBLIC_EXT)
        except StorageError:
            self._fail(key, REASON_LOAD_PUBLIC)

    def _validate(self, key: KeyPairDescriptor) -> None:
        key.state = CertState.VALIDATING
        try:
            key.key = core.load_private_key_pem(key.key_priv_pem or b"")
        except ValueError as e:
            logger.debug(f"解析私钥失败 {key.read_path}: {e}")
            self._fail(key, REASON_PARSE)
            return
        if core.encode_public_key_pem(key.key.public_key()) != key.key_pub_pem:
            self._fail(key, REASON_MISMATCH)
            return
        key.state = CertState.VALID

    def _regenerate(self, key: KeyPairDescriptor, tpl: KeyPairTemplate) -> None:
        key.key = core.new_private_key(tpl.key_type, self.settings.rsa_key_size)
        key.key_pub_pem = core.encode_public_key_pem(key.key.public_key())
        key.key_priv_pem = core.encode_private_key_pem(key.key)
        self.writer.write(key.write_path + PUBLIC_EXT, key.key_pub_pem)
        self.writer.write(key.write_path + PRIVATE_EXT, key.key_priv_pem)

    def _emit(self, key: KeyPairDescriptor, path: str) -> None:
        outcome = Outcome(kind=self.kind, node="", path=path, state=key.state, reason=key.failed)
        self.outcomes.append(outcome)
        if self.report is not None:
            self.report(outcome)
