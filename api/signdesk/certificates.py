"""
Embedded certificate authority.

Builds the Root CA -> Intermediate CA -> Signing certificate chain used to
attach a signing identity to finalized documents. The chain is created once
per process (or loaded from provisioned PEM material) and cached; it is never
regenerated while the process runs, since documents already finalized refer
to it.
"""
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from . import config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
VALIDITY_YEARS = 100
ORGANIZATION = "SignDesk"
ORGANIZATION_UNIT = "SignDesk Signing"
COUNTRY = "FR"
STATE = "Ile-de-France"
LOCALITY = "Paris"
ROOT_CN = "SignDesk Root CA"
INTERMEDIATE_CN = "SignDesk Sub-CA"
SIGNING_CN = "SignDesk Sign"


@dataclass(frozen=True)
class CertifiedKey:
    certificate: x509.Certificate
    private_key: Optional[rsa.RSAPrivateKey]


@dataclass(frozen=True)
class CertificateChain:
    root: CertifiedKey
    intermediate: CertifiedKey
    signing: CertifiedKey


@dataclass(frozen=True)
class SigningIdentity:
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey
    chain: list  # [intermediate, root]

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode()


def _serial_number() -> int:
    # 128 random bits, top bit cleared so the DER integer stays positive
    return int.from_bytes(secrets.token_bytes(16), "big") >> 1


def _name(common_name: str, leaf: bool = False) -> x509.Name:
    attrs = [
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
    ]
    if leaf:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, ORGANIZATION_UNIT))
    attrs.append(x509.NameAttribute(NameOID.COUNTRY_NAME, COUNTRY))
    if leaf:
        attrs.append(x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, STATE))
        attrs.append(x509.NameAttribute(NameOID.LOCALITY_NAME, LOCALITY))
    return x509.Name(attrs)


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _builder(subject: x509.Name, issuer: x509.Name, public_key) -> x509.CertificateBuilder:
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    not_after = not_before + timedelta(days=365 * VALIDITY_YEARS)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )


def _ca_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=False,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=True,
        crl_sign=True,
        encipher_only=False,
        decipher_only=False,
    )


def _generate_root() -> CertifiedKey:
    key = _new_key()
    name = _name(ROOT_CN)
    cert = (
        _builder(name, name, key.public_key())
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_ca_key_usage(), critical=True)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return CertifiedKey(cert, key)


def _generate_intermediate(root: CertifiedKey) -> CertifiedKey:
    key = _new_key()
    cert = (
        _builder(_name(INTERMEDIATE_CN), root.certificate.subject, key.public_key())
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(_ca_key_usage(), critical=True)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(root.certificate.public_key()),
            critical=False,
        )
        .sign(root.private_key, hashes.SHA256())
    )
    return CertifiedKey(cert, key)


def _generate_signing(intermediate: CertifiedKey) -> CertifiedKey:
    key = _new_key()
    cert = (
        _builder(_name(SIGNING_CN, leaf=True), intermediate.certificate.subject, key.public_key())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,  # non-repudiation
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.EMAIL_PROTECTION]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(intermediate.certificate.public_key()),
            critical=False,
        )
        .sign(intermediate.private_key, hashes.SHA256())
    )
    return CertifiedKey(cert, key)


def generate_chain() -> CertificateChain:
    root = _generate_root()
    intermediate = _generate_intermediate(root)
    signing = _generate_signing(intermediate)
    logger.info(
        "Generated signing chain (serial %x, fingerprint %s)",
        signing.certificate.serial_number,
        signing.certificate.fingerprint(hashes.SHA256()).hex(),
    )
    return CertificateChain(root=root, intermediate=intermediate, signing=signing)


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    if cert.issuer != issuer.subject:
        return False
    try:
        issuer.public_key().verify(
            cert.signature,
            cert.tbs_certificate_bytes,
            padding.PKCS1v15(),
            cert.signature_hash_algorithm,
        )
    except InvalidSignature:
        return False
    return True


def verify_chain(chain: CertificateChain) -> bool:
    """Check issuer links and signatures: signing <- intermediate <- root <- root."""
    root = chain.root.certificate
    intermediate = chain.intermediate.certificate
    signing = chain.signing.certificate
    return (
        _issued_by(root, root)
        and _issued_by(intermediate, root)
        and _issued_by(signing, intermediate)
    )


def load_chain(
    root_pem: str,
    intermediate_pem: str,
    signing_pem: str,
    signing_key_pem: str,
    key_password: Optional[str] = None,
) -> CertificateChain:
    """Build a chain from provisioned PEM material. Only the signing key is needed."""
    try:
        root = x509.load_pem_x509_certificate(root_pem.encode())
        intermediate = x509.load_pem_x509_certificate(intermediate_pem.encode())
        signing = x509.load_pem_x509_certificate(signing_pem.encode())
        key = serialization.load_pem_private_key(
            signing_key_pem.encode(),
            password=key_password.encode() if key_password else None,
        )
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"Unreadable signing material: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError("Signing key must be an RSA key")
    if key.public_key().public_numbers() != signing.public_key().public_numbers():
        raise ConfigurationError("Signing key does not match the signing certificate")
    chain = CertificateChain(
        root=CertifiedKey(root, None),
        intermediate=CertifiedKey(intermediate, None),
        signing=CertifiedKey(signing, key),
    )
    if not verify_chain(chain):
        raise ConfigurationError("Provisioned certificates do not form a valid chain")
    return chain


class CertificateAuthority:
    """Process-wide, lazily initialized holder of the signing chain."""

    def __init__(
        self,
        root_pem: Optional[str] = None,
        intermediate_pem: Optional[str] = None,
        signing_pem: Optional[str] = None,
        signing_key_pem: Optional[str] = None,
        key_password: Optional[str] = None,
    ):
        self._material = (root_pem, intermediate_pem, signing_pem, signing_key_pem)
        self._key_password = key_password
        self._chain: Optional[CertificateChain] = None
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "CertificateAuthority":
        return cls(
            root_pem=config.ROOT_CA_CERT,
            intermediate_pem=config.INTERMEDIATE_CERT,
            signing_pem=config.SIGN_CERT,
            signing_key_pem=config.SIGN_KEY,
            key_password=config.SIGN_KEY_PASSWORD,
        )

    def _build(self) -> CertificateChain:
        provided = [bool(item) for item in self._material]
        if all(provided):
            logger.info("Loading provisioned signing chain")
            return load_chain(*self._material, key_password=self._key_password)
        if any(provided):
            names = ("root certificate", "intermediate certificate", "signing certificate", "signing key")
            missing = ", ".join(n for n, ok in zip(names, provided) if not ok)
            raise ConfigurationError(f"Incomplete signing material, missing: {missing}")
        return generate_chain()

    def init(self) -> CertificateChain:
        return self.get_chain()

    def shutdown(self):
        with self._lock:
            self._chain = None

    @property
    def initialized(self) -> bool:
        return self._chain is not None

    def get_chain(self) -> CertificateChain:
        chain = self._chain
        if chain is not None:
            return chain
        with self._lock:
            if self._chain is None:
                self._chain = self._build()
            return self._chain

    def get_signing_certificate(self) -> SigningIdentity:
        chain = self.get_chain()
        return SigningIdentity(
            certificate=chain.signing.certificate,
            private_key=chain.signing.private_key,
            chain=[chain.intermediate.certificate, chain.root.certificate],
        )

    def export_pkcs12(self, password: str = "") -> bytes:
        identity = self.get_signing_certificate()
        encryption = (
            serialization.BestAvailableEncryption(password.encode())
            if password
            else serialization.NoEncryption()
        )
        return pkcs12.serialize_key_and_certificates(
            name=SIGNING_CN.encode(),
            key=identity.private_key,
            cert=identity.certificate,
            cas=identity.chain,
            encryption_algorithm=encryption,
        )


_authority: Optional[CertificateAuthority] = None
_authority_lock = threading.Lock()


def get_authority() -> CertificateAuthority:
    global _authority
    if _authority is None:
        with _authority_lock:
            if _authority is None:
                _authority = CertificateAuthority.from_env()
    return _authority


def set_authority(authority: Optional[CertificateAuthority]):
    """Swap the process-wide authority (provisioning and tests)."""
    global _authority
    with _authority_lock:
        _authority = authority
