"""
集群拓扑的数据模型定义。
"""

from __future__ import annotations

from typing import Dict, Iterator, Tuple

from pydantic import BaseModel, ConfigDict, Field

# 角色名称
ROLE_API = "apisans"
ROLE_MASTERS = "masters"
ROLE_WORKERS = "workers"
ROLE_ETCD = "etcd"

ALL_ROLES = (ROLE_API, ROLE_MASTERS, ROLE_WORKERS, ROLE_ETCD)

HostMap = Dict[str, Tuple[str, ...]]


class Topology(BaseModel):
    """
    角色 -> 节点名 -> 额外名称/地址 的映射，每次运行构建一次，之后不可变。
    节点顺序保持输入顺序。
    """

    model_config = ConfigDict(frozen=True)

    roles: Dict[str, HostMap] = Field(default_factory=dict)

    def nodes(self, role: str) -> HostMap:
        """返回某个角色下的节点映射，角色不存在时返回空映射。"""
        return self.roles.get(role, {})

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def extras(self, role: str, node: str) -> Tuple[str, ...]:
        return self.nodes(role).get(node, ())

    def iter_nodes(self, role: str) -> Iterator[str]:
        yield from self.nodes(role)


class UserGroup(BaseModel):
    """需要签发客户端证书的用户及其所属组。"""

    model_config = ConfigDict(frozen=True)

    user: str
    group: str


class ClusterInput(BaseModel):
    """
    命令行或配置提供的原始拓扑字符串。
    """

    apisans: str | None = None
    masters: str | None = None
    workers: str | None = None
    etcd: str | None = None
    users: str | None = None
