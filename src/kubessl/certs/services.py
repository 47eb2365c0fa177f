"""
证书调和引擎。

对每个描述符按目录顺序执行：加载 -> 解析 -> 校验签名 -> 比对定义 -> 保留或重新生成。
CA 排在前面，保证叶子证书校验时其签发 CA 已处于最终状态（KEPT 或 REGENERATED）。
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, List, Optional

from loguru import logger

from src.kubessl.errors import PolicyViolationError, ReconcileError, StorageError
from src.kubessl.storage import StorageDriver
from . import core
from .identity import MaterializedCatalog
from .schemas import (
    CertificateDescriptor,
    CertState,
    IssueSettings,
    Outcome,
    ReconcilePolicy,
)

REASON_FORCE = "ForceRegen"
REASON_LOAD = "error loading certificate/key"
REASON_PARSE = "error loading cert or key from encoded format"
REASON_KEY_MISMATCH = "cert and key do not match"
REASON_SELF_SIGNATURE = "error verifying cert signature"
REASON_PARENT = "cert not emitted by parent CA"
REASON_DEFINITION = "cert not emitted according to definition"
REASON_EXPIRY = "cert expired or expiring soon"

CERT_EXT = ".crt"
KEY_EXT = ".key"

Reporter = Callable[[Outcome], None]


class CertificateReconciler:
    """
    证书调和器，拥有一次运行中的全部描述符。
    :param materialized: 物化后的描述符与 CA 登记表。
    :param reader: 读取已有证书的存储。
    :param writer: 写入新证书的存储。
    :param policy: 覆盖策略。
    :param settings: 签发参数。
    :param report: 每处理完一个描述符时的回调，用于实时输出结果行。
    """

    kind = "CRT"

    def __init__(
        self,
        materialized: MaterializedCatalog,
        reader: StorageDriver,
        writer: StorageDriver,
        policy: ReconcilePolicy,
        settings: IssueSettings,
        report: Optional[Reporter] = None,
    ):
        self.materialized = materialized
        self.reader = reader
        self.writer = writer
        self.policy = policy
        self.settings = settings
        self.report = report
        self.changed = False
        self.outcomes: List[Outcome] = []

    def run(self) -> List[Outcome]:
        """
        按顺序调和所有描述符。
        :raises PolicyViolationError: 校验失败且不允许覆盖。
        :raises KeyGenerationError / CertificateEncodingError / WriteError: 重新生成失败。
        """
        for descriptor in self.materialized.descriptors:
            self.reconcile(descriptor)
        return self.outcomes

    def reconcile(self, crt: CertificateDescriptor) -> None:
        template = self.materialized.template_of(crt)

        if self.policy.force_regen:
            self._fail(crt, REASON_FORCE)
        else:
            self._load(crt)
            if not crt.failed:
                self._validate(crt)

        if not crt.failed:
            crt.state = CertState.KEPT
            logger.debug(f"证书有效，保留: {crt.read_path}")
        elif self.policy.may_write():
            logger.info(f"证书需要重新生成: {crt.write_path} ({crt.failed})")
            self._regenerate(crt)
            crt.state = CertState.REGENERATED
            self.changed = True
        else:
            self._emit(crt, template.path)
            logger.error(f"证书校验失败且禁止覆盖: {crt.read_path} ({crt.failed})")
            raise PolicyViolationError(self.kind, template.path, crt.node, crt.failed)

        self._emit(crt, template.path)

    def _fail(self, crt: CertificateDescriptor, reason: str) -> None:
        crt.failed = reason
        crt.state = CertState.INVALID

    def _load(self, crt: CertificateDescriptor) -> None:
        crt.state = CertState.LOADING
        try:
            crt.cert_pem = self.reader.read(crt.read_path + CERT_EXT)
            crt.key_pem = self.reader.read(crt.read_path + KEY_EXT)
        except StorageError as e:
            logger.debug(f"读取失败: {e}")
            self._fail(crt, REASON_LOAD)

    def _validate(self, crt: CertificateDescriptor) -> None:
        crt.state = CertState.VALIDATING
        try:
            crt.cert, crt.key = core.load_cert_and_key_from_pem(crt.cert_pem or b"", crt.key_pem or b"")
        except ValueError as e:
            logger.debug(f"解析失败 {crt.read_path}: {e}")
            self._fail(crt, REASON_PARSE)
            return

        if not core.key_matches_certificate(crt.cert, crt.key):
            self._fail(crt, REASON_KEY_MISMATCH)
            return

        parent = self.materialized.parent_of(crt)
        if parent is None:
            if not core.verify_self_signed(crt.cert, crt.key):
                self._fail(crt, REASON_SELF_SIGNATURE)
                return
        else:
            self._require_terminal(parent, crt)
            if not core.verify_issued_by(crt.cert, parent.cert):
                self._fail(crt, REASON_PARENT)
                return

        mismatch = core.matches_definition(crt.cert, crt)
        if mismatch:
            logger.debug(f"{crt.read_path}: {mismatch}")
            self._fail(crt, REASON_DEFINITION)
            return

        problem = core.validity_problem(crt.cert, timedelta(days=self.settings.min_remaining_days))
        if problem:
            logger.debug(f"{crt.read_path}: {problem}")
            self._fail(crt, REASON_EXPIRY)
            return

        crt.state = CertState.VALID

    def _require_terminal(self, parent: CertificateDescriptor, crt: CertificateDescriptor) -> None:
        if not parent.state.terminal or parent.cert is None:
            raise ReconcileError(
                f"{crt.read_path} 的签发 CA {parent.read_path} 尚未处理完成 (state={parent.state.value})"
            )

    def _regenerate(self, crt: CertificateDescriptor) -> None:
        template = self.materialized.template_of(crt)
        parent = self.materialized.parent_of(crt)
        if parent is None:
            crt.cert, crt.key = core.issue_authority(crt, template, self.settings)
        else:
            self._require_terminal(parent, crt)
            crt.cert, crt.key = core.issue_leaf(crt, template, parent.cert, parent.key, self.settings)

        crt.cert_pem = core.encode_cert_pem(crt.cert)
        crt.key_pem = core.encode_private_key_pem(crt.key)

        self.writer.write(crt.write_path + CERT_EXT, crt.cert_pem)
        self.writer.write(crt.write_path + KEY_EXT, crt.key_pem)

    def _emit(self, crt: CertificateDescriptor, path: str) -> None:
        outcome = Outcome(kind=self.kind, node=crt.node, path=path, state=crt.state, reason=crt.failed)
        self.outcomes.append(outcome)
        if self.report is not None:
            self.report(outcome)
