"""
身份物化：把模板与拓扑组合为具体的证书描述符。

SAN 取并集并去重，再按规范顺序排列（DNS 名称按字典序，IP 按版本与数值），
保证拓扑不变时多次运行得到完全相同的身份。
"""

from __future__ import annotations

import ipaddress
import posixpath
from typing import Dict, Iterable, List, Set, Tuple

from loguru import logger

from src.kubessl.errors import InvalidTopologyInput
from src.kubessl.topology.schemas import ROLE_API, Topology
from .registry import Catalog
from .schemas import CertificateDescriptor, CertificateTemplate, SubjectAltNames

GLOBAL_PATH = "global"
NODES_PATH = "nodes"

DEFAULT_NODE_SANS = ("127.0.0.1", "localhost", "::1")

NODE_PLACEHOLDER = "node_name"

# X.509 对 CN 与 O 的长度上限 (ub-common-name / ub-organization-name)
NAME_MAX_LENGTH = 64


def render(pattern: str, node: str) -> str:
    """把模式中的 {node_name} 替换为节点名称。"""
    return pattern.replace("{" + NODE_PLACEHOLDER + "}", node)


def classify_name(name: str) -> Tuple[str, str]:
    """
    判断名称是 IP 字面量还是主机名。
    :return: ("ip", 规范化的地址文本) 或 ("dns", 原始名称)。
    """
    try:
        return "ip", str(ipaddress.ip_address(name))
    except ValueError:
        return "dns", name


def canonical_sans(names: Iterable[str]) -> SubjectAltNames:
    """
    去重并按规范顺序排列 SAN。
    :param names: 任意顺序、可能重复的候选名称。
    """
    dns: Set[str] = set()
    ips: Set[str] = set()
    for name in names:
        kind, value = classify_name(name)
        if kind == "ip":
            ips.add(value)
        else:
            dns.add(value)
    ordered_ips = sorted(ips, key=lambda ip: (ipaddress.ip_address(ip).version, ipaddress.ip_address(ip)))
    return SubjectAltNames(dns_names=tuple(sorted(dns)), ip_addresses=tuple(ordered_ips))


def make_sans(topology: Topology, template: CertificateTemplate, role: str, node: str) -> SubjectAltNames:
    names: List[str] = []
    if template.api_sans:
        for host, extras in topology.nodes(ROLE_API).items():
            names.append(host)
            names.extend(extras)
    if template.node_sans and node:
        names.append(node)
        names.extend(topology.extras(role, node))
        names.extend(DEFAULT_NODE_SANS)
    names.extend(template.extra_sans)
    return canonical_sans(names)


def storage_path(template: CertificateTemplate, node: str) -> str:
    """
    计算证书在存储中的逻辑路径（不含扩展名）。
    全局身份位于 global/ 下，节点身份位于 nodes/<node>/ 下。
    """
    relative = template.path.lstrip("/")
    if node:
        return posixpath.join(NODES_PATH, node, relative)
    return posixpath.join(GLOBAL_PATH, relative)


def check_subject(template: CertificateTemplate, node: str, common_name: str, organization: str) -> None:
    """
    在任何加密操作之前校验渲染后的主题字段长度。
    :raises InvalidTopologyInput: CN 为空或超长，或 O 超长。
    """
    where = f"{template.path} (node={node!r})" if node else template.path
    if not 1 <= len(common_name) <= NAME_MAX_LENGTH:
        raise InvalidTopologyInput(
            f"{where}: CommonName 长度必须在 1 到 {NAME_MAX_LENGTH} 之间: {common_name!r}"
        )
    if len(organization) > NAME_MAX_LENGTH:
        raise InvalidTopologyInput(
            f"{where}: Organization 长度不能超过 {NAME_MAX_LENGTH}: {organization!r}"
        )


def make_descriptor(
    topology: Topology, template: CertificateTemplate, idx: int, role: str = "", node: str = ""
) -> CertificateDescriptor:
    common_name = render(template.common_name, node)
    organization = render(template.organization, node)
    check_subject(template, node, common_name, organization)
    path = storage_path(template, node)
    return CertificateDescriptor(
        node=node,
        common_name=common_name,
        organization=[organization] if organization else [],
        sans=make_sans(topology, template, role, node),
        template_idx=idx,
        read_path=path,
        write_path=path,
    )


class MaterializedCatalog:
    """
    一次运行的全部描述符以及 CA 路径 -> 描述符下标的登记表。
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self.descriptors: List[CertificateDescriptor] = []
        self.authorities: Dict[str, int] = {}

    def append(self, descriptor: CertificateDescriptor) -> None:
        self.descriptors.append(descriptor)
        template = self.catalog[descriptor.template_idx]
        if template.is_authority:
            self.authorities[template.path] = len(self.descriptors) - 1

    def template_of(self, descriptor: CertificateDescriptor) -> CertificateTemplate:
        return self.catalog[descriptor.template_idx]

    def parent_of(self, descriptor: CertificateDescriptor) -> CertificateDescriptor | None:
        """返回叶子证书的签发 CA 描述符，CA 本身返回 None。"""
        parent = self.template_of(descriptor).parent
        if not parent:
            return None
        return self.descriptors[self.authorities[parent]]


def materialize(catalog: Catalog, topology: Topology) -> MaterializedCatalog:
    """
    按目录顺序为每个模板生成描述符。
    - 未绑定角色的模板生成一个描述符
    - 绑定角色的模板为拓扑中每个角色的每个节点生成一个描述符；
      同一节点出现在多个角色中时只生成一次，因为存储路径相同
    """
    result = MaterializedCatalog(catalog)
    for idx, template in enumerate(catalog):
        if not template.nodes:
            result.append(make_descriptor(topology, template, idx))
            continue
        rendered: Set[str] = set()
        for role in template.nodes:
            if not topology.has_role(role):
                continue
            for node in topology.iter_nodes(role):
                if node in rendered:
                    logger.debug(f"{template.path}: 节点 {node} 已在其他角色中生成，跳过")
                    continue
                rendered.add(node)
                result.append(make_descriptor(topology, template, idx, role, node))
    logger.info(f"共生成 {len(result.descriptors)} 个证书描述符，CA {len(result.authorities)} 个")
    return result
