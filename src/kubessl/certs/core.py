"""
证书生成的核心逻辑实现。
包括生成私钥、签发 CA 与叶子证书、PEM 编解码以及签名与身份校验。
"""

from __future__ import annotations

import ipaddress
from datetime import datetime, timedelta, timezone
from typing import Any, List, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    PublicFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID
from loguru import logger

from src.kubessl.errors import CertificateEncodingError, KeyGenerationError
from .schemas import CertificateDescriptor, CertificateTemplate, IssueSettings, SubjectAltNames

CURVES = {
    "P256": ec.SECP256R1,
    "P384": ec.SECP384R1,
    "P521": ec.SECP521R1,
}

# 证书起始时间提前一小时，避免时钟偏差导致的误判
CLOCK_SKEW = timedelta(hours=1)


def new_private_key(key_type: str = "", rsa_key_size: int = 2048) -> Any:
    """
    生成私钥。
    :param key_type: 空字符串表示 RSA，否则为 P256 / P384 / P521。
    :param rsa_key_size: RSA 密钥位数。
    :raises KeyGenerationError: 曲线未知或底层生成失败。
    """
    try:
        if key_type == "":
            return rsa.generate_private_key(public_exponent=65537, key_size=rsa_key_size)
        curve = CURVES.get(key_type)
        if curve is None:
            raise KeyGenerationError(f"无法识别的椭圆曲线: {key_type!r}")
        return ec.generate_private_key(curve())
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.error(f"生成私钥失败: {e}")
        raise KeyGenerationError(f"生成私钥失败: {e}") from e


def build_name(common_name: str, organization: Sequence[str]) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, org) for org in organization]
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attributes)


def build_san_extension(sans: SubjectAltNames) -> x509.SubjectAlternativeName:
    general_names: List[x509.GeneralName] = [x509.DNSName(name) for name in sans.dns_names]
    general_names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in sans.ip_addresses)
    return x509.SubjectAlternativeName(general_names)


def _encoding_error(what: str, e: Exception) -> CertificateEncodingError:
    logger.error(f"签发证书失败 {what}: {e}")
    return CertificateEncodingError(f"签发证书失败 {what}: {e}")


def _sign(builder: x509.CertificateBuilder, signing_key: Any, what: str) -> x509.Certificate:
    try:
        return builder.sign(private_key=signing_key, algorithm=hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise _encoding_error(what, e) from e


def issue_authority(
    descriptor: CertificateDescriptor,
    template: CertificateTemplate,
    settings: IssueSettings,
) -> Tuple[x509.Certificate, Any]:
    """
    签发自签名 CA 证书。
    :return: (证书, 私钥)
    :raises KeyGenerationError / CertificateEncodingError
    """
    key = new_private_key(template.key_type, settings.rsa_key_size)
    valid_from = datetime.now(timezone.utc) - CLOCK_SKEW
    try:
        subject = build_name(descriptor.common_name, descriptor.organization)
        sans = build_san_extension(descriptor.sans) if descriptor.sans.all() else None
    except ValueError as e:
        raise _encoding_error(template.path, e) from e
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_from + timedelta(days=settings.validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                key_cert_sign=True,
                crl_sign=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if sans is not None:
        builder = builder.add_extension(sans, critical=False)
    return _sign(builder, key, template.path), key


def issue_leaf(
    descriptor: CertificateDescriptor,
    template: CertificateTemplate,
    parent_cert: x509.Certificate,
    parent_key: Any,
    settings: IssueSettings,
) -> Tuple[x509.Certificate, Any]:
    """
    使用 CA 的私钥签发叶子证书。
    :param parent_cert: 签发 CA 的证书（本次运行中已校验或已重新生成）。
    :param parent_key: 签发 CA 的私钥。
    :return: (证书, 私钥)
    :raises KeyGenerationError / CertificateEncodingError
    """
    key = new_private_key(template.key_type, settings.rsa_key_size)
    valid_from = datetime.now(timezone.utc) - CLOCK_SKEW
    try:
        subject = build_name(descriptor.common_name, descriptor.organization)
        sans = build_san_extension(descriptor.sans) if descriptor.sans.all() else None
    except ValueError as e:
        raise _encoding_error(template.path, e) from e
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(parent_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_from + timedelta(days=settings.validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                key_cert_sign=False,
                crl_sign=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(parent_cert.public_key()),
            critical=False,
        )
    )
    if template.usages:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([usage.oid for usage in template.usages]),
            critical=False,
        )
    if sans is not None:
        builder = builder.add_extension(sans, critical=False)
    return _sign(builder, parent_key, template.path), key


def encode_cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.PEM)


def encode_private_key_pem(key: Any) -> bytes:
    """RSA 输出 RSA PRIVATE KEY，EC 输出 EC PRIVATE KEY。"""
    try:
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption(),
        )
    except (AttributeError, ValueError, TypeError) as e:
        raise CertificateEncodingError(f"私钥编码失败: {e}") from e


def encode_public_key_pem(key: Any) -> bytes:
    """以 SubjectPublicKeyInfo (PUBLIC KEY) 格式编码公钥。"""
    return key.public_bytes(encoding=Encoding.PEM, format=PublicFormat.SubjectPublicKeyInfo)


def load_cert_and_key_from_pem(cert_pem: bytes, key_pem: bytes) -> Tuple[x509.Certificate, Any]:
    """
    从 PEM 解析证书与私钥，证书 PEM 中必须恰好包含一个证书块。
    :raises ValueError: 格式错误。
    """
    certs = x509.load_pem_x509_certificates(cert_pem)
    if len(certs) != 1:
        raise ValueError(f"需要且只能有一个证书块，实际为 {len(certs)}")
    key = load_private_key_pem(key_pem)
    return certs[0], key


def load_private_key_pem(key_pem: bytes) -> Any:
    """
    解析 PKCS#1 / SEC1 / PKCS#8 格式的 RSA 或 EC 私钥。
    :raises ValueError: 格式错误或密钥类型不受支持。
    """
    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"无法解析私钥: {e}") from e
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"不支持的私钥类型: {type(key).__name__}")
    return key


def _spki(public_key: Any) -> bytes:
    return public_key.public_bytes(encoding=Encoding.DER, format=PublicFormat.SubjectPublicKeyInfo)


def key_matches_certificate(cert: x509.Certificate, key: Any) -> bool:
    """判断私钥是否与证书中的公钥对应。"""
    try:
        return _spki(cert.public_key()) == _spki(key.public_key())
    except (AttributeError, ValueError, UnsupportedAlgorithm):
        return False


def verify_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    """校验证书的签发者名称与签名均来自 issuer。"""
    try:
        cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature) as e:
        logger.debug(f"签名校验失败: {e}")
        return False


def verify_self_signed(cert: x509.Certificate, key: Any) -> bool:
    """校验 CA 证书由自身私钥签名。"""
    return key_matches_certificate(cert, key) and verify_issued_by(cert, cert)


def get_common_name(cert: x509.Certificate) -> str:
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ""


def get_organization(cert: x509.Certificate) -> List[str]:
    return [str(attr.value) for attr in cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)]


def get_all_sans(cert: x509.Certificate) -> List[str]:
    """返回证书中的全部 DNS 名称与 IP 地址文本。"""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    names = list(san.get_values_for_type(x509.DNSName))
    names.extend(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return names


def unique_set_equal(src: Sequence[str], dst: Sequence[str]) -> bool:
    """
    无序比较两个元素不重复的列表：长度相同、元素集合相同、且无重复元素。
    """
    if len(src) != len(dst):
        return False
    src_set = set(src)
    return len(src_set) == len(src) and src_set == set(dst)


def matches_definition(cert: x509.Certificate, descriptor: CertificateDescriptor) -> str:
    """
    比较证书与描述符的 CN、O 与 SAN。
    :return: 不一致的字段说明，一致时返回空字符串。
    """
    if get_common_name(cert) != descriptor.common_name:
        return "mismatching CommonName"
    if not unique_set_equal(get_organization(cert), descriptor.organization):
        return "mismatching Organisation"
    cert_sans = get_all_sans(cert)
    if not unique_set_equal(cert_sans, descriptor.sans.all()):
        logger.debug(f"Cert Sans: {sorted(cert_sans)} Def Sans: {sorted(descriptor.sans.all())}")
        return "mismatching AltNames"
    return ""


def validity_problem(cert: x509.Certificate, min_remaining: timedelta, now: datetime | None = None) -> str:
    """
    检查证书有效期。
    :return: 尚未生效或剩余有效期不足时返回说明，否则返回空字符串。
    """
    now = now or datetime.now(timezone.utc)
    if cert.not_valid_before_utc > now:
        return "not yet valid"
    if cert.not_valid_after_utc - now < min_remaining:
        return "expires within minimum validity window"
    return ""
