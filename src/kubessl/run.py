#!/usr/bin/env python
"""
命令行入口：生成并维护 Kubernetes 控制面所需的全部证书。

退出码：
  0 = 成功（可能有写入）
  1 = 生成或存储失败
  2 = 拓扑或配置输入错误
  3 = 证书/密钥校验失败且禁止覆盖
"""

from __future__ import annotations

from pathlib import Path

import click
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

from src.kubessl.certs.schemas import Outcome
from src.kubessl.config import load_config
from src.kubessl.errors import (
    InvalidTopologyInput,
    KubesslError,
    PolicyViolationError,
    StorageError,
    TemplateRegistryError,
)
from src.kubessl.services import ReconciliationRun
from src.kubessl.topology.schemas import ClusterInput

EXIT_FAILURE = 1
EXIT_INPUT = 2
EXIT_POLICY = 3


def _echo_outcome(outcome: Outcome) -> None:
    for line in outcome.lines():
        click.echo(line)


def _setup_logging(level: str) -> None:
    # stdout 只输出结果行，日志写到 stderr
    logger.remove()
    logger.add(lambda message: click.echo(message, err=True, nl=False), level=level.upper())


@click.group()
@click.option("--src", "source", default=None, help="读取已有证书的位置（URL 或路径），默认与 --dst 相同")
@click.option("--dst", "destination", default=None, help='写入证书的位置（URL 或路径），默认 "outputs/system"')
@click.option("--log-level", default=None, help="日志级别，例如 DEBUG / INFO")
@click.pass_context
def main(ctx: click.Context, source: str | None, destination: str | None, log_level: str | None) -> None:
    """kubessl: Kubernetes 证书生成工具。"""
    load_dotenv(Path.cwd() / ".env")
    ctx.obj = {"source": source, "destination": destination, "log_level": log_level}


@main.command()
@click.option("--apisans", default=None, help='必填。API 主机及额外名称，例如 "kapi.example.org/10.0.0.1:127.0.0.1"')
@click.option("--masters", default=None, help='必填。控制面节点，例如 "m1.example.org/10.0.0.1,m2.example.org"')
@click.option("--workers", default=None, help='必填。工作节点，例如 "w1.example.org/10.1.0.1"')
@click.option("--etcd", default=None, help="可选。etcd 节点，缺省时使用 masters")
@click.option("--users", default=None, help='可选。用户证书，例如 "bob/admin-users,alice/read-only"')
@click.option("--force-regen", is_flag=True, default=False, help="忽略已有证书，全部重新生成")
@click.option("--no-overwrite", is_flag=True, default=False, help="校验失败时终止运行而不是覆盖")
@click.option("--cluster-domain", default=None, help="集群 DNS 域，默认 cluster.local")
@click.pass_context
def kubecerts(
    ctx: click.Context,
    apisans: str | None,
    masters: str | None,
    workers: str | None,
    etcd: str | None,
    users: str | None,
    force_regen: bool,
    no_overwrite: bool,
    cluster_domain: str | None,
) -> None:
    """生成 Kubernetes mTLS 证书与 service account 密钥对。"""
    opts = ctx.obj or {}
    try:
        cfg = load_config(
            source=opts.get("source"),
            destination=opts.get("destination"),
            log_level=opts.get("log_level"),
            force_regen=True if force_regen else None,
            overwrite=False if no_overwrite else None,
            cluster_domain=cluster_domain,
        )
    except ValidationError as e:
        click.echo(f"配置错误: {e}", err=True)
        ctx.exit(EXIT_INPUT)
    _setup_logging(cfg.log_level)

    cluster = ClusterInput(apisans=apisans, masters=masters, workers=workers, etcd=etcd, users=users)
    try:
        run = ReconciliationRun.from_config(cluster, cfg, report=_echo_outcome)
        run.prepare()
    except (InvalidTopologyInput, TemplateRegistryError, StorageError) as e:
        click.echo(f"输入错误: {e}", err=True)
        ctx.exit(EXIT_INPUT)

    try:
        click.echo("CERTS =>>")
        certs = run.reconcile_certificates()
        click.echo("KEYS =>>")
        keys = run.reconcile_keys()
    except PolicyViolationError as e:
        click.echo(str(e), err=True)
        ctx.exit(EXIT_POLICY)
    except KubesslError as e:
        logger.error(f"运行失败: {e}")
        click.echo(f"运行失败: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    result = run.result(certs, keys)
    click.echo(f"\nGLOBAL_CHANGED: {'TRUE' if result.changed else 'FALSE'}")


if __name__ == "__main__":
    main()
