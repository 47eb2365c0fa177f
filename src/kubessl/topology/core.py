"""
拓扑解析：把逗号分隔的主机描述字符串解析为 Topology。

主机条目格式为 name[/extra1:extra2:...]，name 为节点名称，
斜杠后以冒号分隔额外的主机名或 IP 地址。
"""

from __future__ import annotations

from typing import List, Tuple

from loguru import logger

from src.kubessl.errors import InvalidTopologyInput
from .schemas import (
    ClusterInput,
    HostMap,
    Topology,
    UserGroup,
    ROLE_API,
    ROLE_ETCD,
    ROLE_MASTERS,
    ROLE_WORKERS,
)


def _split_entries(value: str) -> List[str]:
    return [part.strip() for part in value.split(",")]


# 节点名与用户名会成为存储路径中的一级目录
RESERVED_NAMES = (".", "..")


def _check_name(name: str, field: str, entry: str) -> None:
    """
    校验节点名称或额外名称。
    主机名会写入证书的 DNSName，只接受 ASCII（国际化域名需先转换为 xn-- 形式）。
    :raises InvalidTopologyInput: 名称为保留的路径片段或包含非 ASCII 字符。
    """
    if name in RESERVED_NAMES:
        raise InvalidTopologyInput(f"{field}: 名称不能为 {name!r}: {entry!r}")
    if not name.isascii():
        raise InvalidTopologyInput(f"{field}: 名称只能包含 ASCII 字符: {name!r}")


def parse_hosts(hosts: str | None, field: str) -> HostMap:
    """
    解析一组主机条目。
    :param hosts: 逗号分隔的主机条目，例如 "m1.example.org/10.0.0.1:10.0.0.2,m2.example.org"。
    :param field: 字段名称，仅用于错误信息。
    :return: 节点名 -> 额外名称元组，保持输入顺序。
    :raises InvalidTopologyInput: 字段缺失或条目格式错误。
    """
    if hosts is None or not hosts.strip():
        raise InvalidTopologyInput(f"{field}: 至少需要一个主机")

    host_map: HostMap = {}
    for entry in _split_entries(hosts):
        parts = entry.split("/")
        if len(parts) > 2:
            raise InvalidTopologyInput(f"{field}: 每个主机只允许一个节点名称: {entry!r}")
        node = parts[0].strip()
        if not node:
            raise InvalidTopologyInput(f"{field}: 节点名称不能为空: {entry!r}")
        _check_name(node, field, entry)
        if node in host_map:
            raise InvalidTopologyInput(f"{field}: 节点名称重复: {node!r}")
        extras: Tuple[str, ...] = ()
        if len(parts) == 2:
            extras = tuple(extra.strip() for extra in parts[1].split(":"))
            if any(not extra for extra in extras):
                raise InvalidTopologyInput(
                    f"{field}: {node!r} 的额外名称不能为空: {entry!r}"
                )
            for extra in extras:
                _check_name(extra, field, entry)
        host_map[node] = extras
    return host_map


def parse_users(users: str | None) -> List[UserGroup]:
    """
    解析用户列表，格式为 user/group[,user/group]...
    :raises InvalidTopologyInput: 条目格式错误或用户重复。
    """
    if users is None or not users.strip():
        return []

    result: List[UserGroup] = []
    seen = set()
    for entry in _split_entries(users):
        parts = [p.strip() for p in entry.split("/")]
        if len(parts) != 2 or not all(parts):
            raise InvalidTopologyInput(f"users: 无效的用户条目 (应为 user/group): {entry!r}")
        user, group = parts
        if user in RESERVED_NAMES:
            raise InvalidTopologyInput(f"users: 用户名不能为 {user!r}: {entry!r}")
        if user in seen:
            raise InvalidTopologyInput(f"users: 用户重复: {user!r}")
        seen.add(user)
        result.append(UserGroup(user=user, group=group))
    return result


def resolve_topology(cluster: ClusterInput) -> Tuple[Topology, List[UserGroup]]:
    """
    解析完整的集群拓扑与用户列表。
    etcd 缺失时复用 masters 节点（etcd 与控制面同机部署的常见情况）。
    :param cluster: 原始输入。
    :return: (Topology, 用户列表)
    :raises InvalidTopologyInput: 必填字段缺失或格式错误。
    """
    api = parse_hosts(cluster.apisans, ROLE_API)
    masters = parse_hosts(cluster.masters, ROLE_MASTERS)
    workers = parse_hosts(cluster.workers, ROLE_WORKERS)

    if cluster.etcd is None or not cluster.etcd.strip():
        logger.info("未指定 etcd 节点，使用 masters 节点代替")
        etcd = dict(masters)
    else:
        etcd = parse_hosts(cluster.etcd, ROLE_ETCD)

    users = parse_users(cluster.users)

    topology = Topology(
        roles={
            ROLE_API: api,
            ROLE_MASTERS: masters,
            ROLE_WORKERS: workers,
            ROLE_ETCD: etcd,
        }
    )
    logger.debug(
        f"拓扑解析完成: api={list(api)} masters={list(masters)} "
        f"workers={list(workers)} etcd={list(etcd)} users={[u.user for u in users]}"
    )
    return topology, users
