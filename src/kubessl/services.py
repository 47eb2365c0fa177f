"""
一次完整运行的业务编排。
此模块封装拓扑解析、模板展开、证书与密钥对调和，供命令行入口调用。
"""

from __future__ import annotations

import os
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

from src.kubessl.certs.identity import MaterializedCatalog, materialize
from src.kubessl.certs.registry import Catalog, CatalogBuilder
from src.kubessl.certs.schemas import IssueSettings, Outcome, ReconcilePolicy
from src.kubessl.certs.services import CertificateReconciler, Reporter
from src.kubessl.config import Config
from src.kubessl.keys.services import KeyPairReconciler
from src.kubessl.storage import StorageDriver, get_storage
from src.kubessl.topology.core import resolve_topology
from src.kubessl.topology.schemas import ClusterInput


class RunResult(BaseModel):
    """运行结果：全部产物的调和结果以及是否有任何写入。"""

    model_config = ConfigDict(frozen=True)

    certificates: List[Outcome]
    keys: List[Outcome]
    changed: bool


def resolve_location(location: str, cwd: str | None = None) -> str:
    """把不带 scheme 的相对路径转换为基于工作目录的绝对路径。"""
    if "://" in location or os.path.isabs(location):
        return location
    return os.path.join(cwd or os.getcwd(), location)


class ReconciliationRun:
    """
    单次运行拥有的全部状态：目录、描述符、CA 登记表与两个调和器。
    每次调用构造一个新实例，运行之间不共享任何可变状态。
    """

    def __init__(
        self,
        cluster: ClusterInput,
        reader: StorageDriver,
        writer: StorageDriver,
        policy: ReconcilePolicy,
        settings: IssueSettings,
        cluster_domain: str = "cluster.local",
        report: Optional[Reporter] = None,
    ):
        self.cluster = cluster
        self.reader = reader
        self.writer = writer
        self.policy = policy
        self.settings = settings
        self.cluster_domain = cluster_domain
        self.report = report
        self.catalog: Catalog | None = None
        self.materialized: MaterializedCatalog | None = None

    @classmethod
    def from_config(
        cls, cluster: ClusterInput, cfg: Config, report: Optional[Reporter] = None
    ) -> "ReconciliationRun":
        """
        根据配置构造运行实例，source 为空时读写使用同一位置。
        :raises StorageError: 存储 URL 无法识别。
        """
        destination = resolve_location(cfg.destination)
        source = resolve_location(cfg.source) if cfg.source else destination
        writer = get_storage(destination)
        reader = writer if source == destination else get_storage(source)
        return cls(
            cluster=cluster,
            reader=reader,
            writer=writer,
            policy=ReconcilePolicy(force_regen=cfg.force_regen, overwrite=cfg.overwrite),
            settings=IssueSettings(
                rsa_key_size=cfg.rsa_key_size,
                validity_days=cfg.certificate_validity_days,
                min_remaining_days=cfg.min_remaining_validity_days,
            ),
            cluster_domain=cfg.cluster_domain,
            report=report,
        )

    def prepare(self) -> MaterializedCatalog:
        """
        解析拓扑并展开模板目录，不做任何加密操作。
        :raises InvalidTopologyInput / TemplateRegistryError
        """
        topology, users = resolve_topology(self.cluster)
        self.catalog = CatalogBuilder(self.cluster_domain).add_users(users).build()
        self.materialized = materialize(self.catalog, topology)
        return self.materialized

    def reconcile_certificates(self) -> CertificateReconciler:
        """
        调和全部证书。
        :raises PolicyViolationError: 校验失败且禁止覆盖。
        """
        materialized = self.materialized or self.prepare()
        certs = CertificateReconciler(
            materialized, self.reader, self.writer, self.policy, self.settings, report=self.report
        )
        certs.run()
        return certs

    def reconcile_keys(self) -> KeyPairReconciler:
        keys = KeyPairReconciler(self.reader, self.writer, self.policy, self.settings, report=self.report)
        keys.run()
        return keys

    def execute(self) -> RunResult:
        """执行完整调和：先证书后密钥对。"""
        certs = self.reconcile_certificates()
        keys = self.reconcile_keys()
        return self.result(certs, keys)

    @staticmethod
    def result(certs: CertificateReconciler, keys: KeyPairReconciler) -> RunResult:
        changed = certs.changed or keys.changed
        logger.info(
            f"调和完成: 证书 {len(certs.outcomes)} 个, 密钥对 {len(keys.outcomes)} 个, changed={changed}"
        )
        return RunResult(certificates=certs.outcomes, keys=keys.outcomes, changed=changed)
