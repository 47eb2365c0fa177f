"""
证书模板目录。

CA 模板必须排在引用它的叶子模板之前，这样单次顺序遍历即可完成生成，无需拓扑排序。
用户证书模板通过 CatalogBuilder 在生成开始前追加，build() 之后目录不可变。
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Tuple

from src.kubessl.errors import TemplateRegistryError
from src.kubessl.topology.schemas import ALL_ROLES, ROLE_ETCD, ROLE_MASTERS, ROLE_WORKERS, UserGroup
from .schemas import CertificateTemplate, KeyUsageIntent

KUBERNETES_CA = "/etc/kubernetes/pki/ca"
ETCD_CA = "/etc/kubernetes/pki/etcd/ca"
FRONT_PROXY_CA = "/etc/kubernetes/pki/front-proxy-ca"
USERS_DIR = "/etc/kubernetes/pki/users"

SUPPORTED_KEY_TYPES = ("", "P256", "P384", "P521")

SERVER = (KeyUsageIntent.SERVER_AUTH,)
CLIENT = (KeyUsageIntent.CLIENT_AUTH,)


def default_templates(cluster_domain: str = "cluster.local") -> Tuple[CertificateTemplate, ...]:
    """
    返回内置的证书模板，顺序即生成顺序。
    :param cluster_domain: 集群内部 DNS 域，用于 apiserver 的 kubernetes.default.svc.<domain>。
    """
    masters = (ROLE_MASTERS,)
    all_nodes = (ROLE_MASTERS, ROLE_WORKERS)
    etcd = (ROLE_ETCD,)
    return (
        CertificateTemplate(path=KUBERNETES_CA, common_name="kubernetes"),
        CertificateTemplate(path=ETCD_CA, common_name="etcd-ca"),
        CertificateTemplate(path=FRONT_PROXY_CA, common_name="front-proxy-ca"),
        CertificateTemplate(
            path="/etc/kubernetes/pki/apiserver",
            parent=KUBERNETES_CA,
            nodes=masters,
            common_name="kube-apiserver",
            usages=SERVER,
            node_sans=True,
            api_sans=True,
            extra_sans=(
                "kubernetes",
                "kubernetes.default",
                "kubernetes.default.svc",
                f"kubernetes.default.svc.{cluster_domain}",
            ),
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/apiserver-kubelet-client",
            parent=KUBERNETES_CA,
            nodes=masters,
            common_name="kube-apiserver-kubelet-client",
            organization="system:masters",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/admin",
            parent=KUBERNETES_CA,
            common_name="kubernetes-admin",
            organization="system:masters",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/controller-manager",
            parent=KUBERNETES_CA,
            nodes=masters,
            common_name="system:kube-controller-manager",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/kubelet",
            parent=KUBERNETES_CA,
            nodes=all_nodes,
            common_name="system:node:{node_name}",
            organization="system:nodes",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/var/lib/kubelet/pki/kubelet",
            parent=KUBERNETES_CA,
            nodes=all_nodes,
            common_name="{node_name}",
            organization="system:nodes",
            usages=SERVER,
            node_sans=True,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/scheduler",
            parent=KUBERNETES_CA,
            nodes=masters,
            common_name="system:kube-scheduler",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/kube-proxy",
            parent=KUBERNETES_CA,
            nodes=all_nodes,
            common_name="system:kube-proxy",
            organization="system:node-proxier",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/front-proxy-client",
            parent=FRONT_PROXY_CA,
            nodes=all_nodes,
            common_name="front-proxy-client",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/etcd/server",
            parent=ETCD_CA,
            nodes=etcd,
            common_name="{node_name}",
            usages=SERVER,
            node_sans=True,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/etcd/peer",
            parent=ETCD_CA,
            nodes=etcd,
            common_name="{node_name}",
            usages=(KeyUsageIntent.SERVER_AUTH, KeyUsageIntent.CLIENT_AUTH),
            node_sans=True,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/etcd/etcd-healthcheck-client",
            parent=ETCD_CA,
            nodes=masters,
            common_name="kube-etcd-healthcheck-client",
            organization="system:masters",
            usages=CLIENT,
        ),
        CertificateTemplate(
            path="/etc/kubernetes/pki/apiserver-etcd-client",
            parent=ETCD_CA,
            nodes=masters,
            common_name="kube-apiserver-etcd-client",
            organization="system:masters",
            usages=CLIENT,
        ),
    )


def user_template(user: UserGroup) -> CertificateTemplate:
    """为用户生成客户端证书模板（CN 为用户名，O 为组名）。"""
    return CertificateTemplate(
        path=f"{USERS_DIR}/{user.user}",
        parent=KUBERNETES_CA,
        common_name=user.user,
        organization=user.group,
        usages=CLIENT,
    )


class Catalog:
    """
    已展开且不可变的模板目录。
    """

    def __init__(self, templates: Iterable[CertificateTemplate]):
        self._templates: Tuple[CertificateTemplate, ...] = tuple(templates)
        self._index: Dict[str, int] = {}
        validate_templates(self._templates)
        for idx, tpl in enumerate(self._templates):
            self._index[tpl.path] = idx

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[CertificateTemplate]:
        return iter(self._templates)

    def __getitem__(self, idx: int) -> CertificateTemplate:
        return self._templates[idx]

    @property
    def templates(self) -> Tuple[CertificateTemplate, ...]:
        return self._templates

    def index_of(self, path: str) -> int:
        try:
            return self._index[path]
        except KeyError:
            raise TemplateRegistryError(f"模板不存在: {path!r}") from None


class CatalogBuilder:
    """
    在生成开始前组装模板目录：内置模板 + 每个用户一个模板。
    """

    def __init__(self, cluster_domain: str = "cluster.local"):
        self._templates: List[CertificateTemplate] = list(default_templates(cluster_domain))

    def add_template(self, template: CertificateTemplate) -> "CatalogBuilder":
        self._templates.append(template)
        return self

    def add_users(self, users: Iterable[UserGroup]) -> "CatalogBuilder":
        for user in users:
            self.add_template(user_template(user))
        return self

    def build(self) -> Catalog:
        return Catalog(self._templates)


def validate_templates(templates: Tuple[CertificateTemplate, ...]) -> None:
    """
    校验模板目录：
    - 路径唯一
    - parent 必须引用排在前面的 CA 模板
    - CA 模板不能绑定节点角色
    - 角色与密钥类型必须已知
    :raises TemplateRegistryError: 任一约束不满足。
    """
    authorities = set()
    seen = set()
    for tpl in templates:
        if not tpl.path:
            raise TemplateRegistryError("模板路径不能为空")
        if tpl.path in seen:
            raise TemplateRegistryError(f"模板路径重复: {tpl.path!r}")
        seen.add(tpl.path)

        unknown_roles = [role for role in tpl.nodes if role not in ALL_ROLES]
        if unknown_roles:
            raise TemplateRegistryError(f"{tpl.path!r} 引用了未知角色: {unknown_roles}")
        if tpl.key_type not in SUPPORTED_KEY_TYPES:
            raise TemplateRegistryError(f"{tpl.path!r} 使用了不支持的密钥类型: {tpl.key_type!r}")

        if tpl.is_authority:
            if tpl.nodes:
                raise TemplateRegistryError(f"CA 模板不能绑定节点角色: {tpl.path!r}")
            authorities.add(tpl.path)
        elif tpl.parent not in authorities:
            raise TemplateRegistryError(
                f"{tpl.path!r} 的 parent {tpl.parent!r} 必须是排在其前面的 CA 模板"
            )
