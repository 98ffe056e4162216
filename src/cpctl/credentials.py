"""Secret material generated for a new control plane.

Covers the symmetric encryption key handed to the API server, the CA and
client certificates used for mutual TLS, and the database credentials.
"""
from __future__ import annotations

import base64
import ipaddress
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import urlparse

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .models import API_SERVICE_NAME

ORGANIZATION = "cpctl"
KEY_SIZE = 4096
VALIDITY = timedelta(days=3650)
ENCRYPTION_KEY_BYTES = 32


@dataclass(frozen=True, slots=True)
class CertificatePair:
    """PEM encoded certificate and private key."""

    certificate: str
    private_key: str

    def load_certificate(self) -> x509.Certificate:
        """Return the parsed certificate."""
        return x509.load_pem_x509_certificate(self.certificate.encode("ascii"))

    def load_private_key(self) -> rsa.RSAPrivateKey:
        """Return the parsed RSA private key."""
        key = serialization.load_pem_private_key(self.private_key.encode("ascii"), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise TypeError("Expected an RSA private key.")
        return key


@dataclass(frozen=True, slots=True)
class DatabaseCredentials:
    """Credentials for the control plane database."""

    user: str
    password: str
    database: str = "cpctl_api"


def generate_encryption_key() -> str:
    """Return a base64 encoded random 256-bit key."""
    return base64.b64encode(secrets.token_bytes(ENCRYPTION_KEY_BYTES)).decode("ascii")


def generate_database_credentials() -> DatabaseCredentials:
    """Return a fresh database user and password."""
    return DatabaseCredentials(
        user=f"cpctl_{secrets.token_hex(4)}",
        password=secrets.token_urlsafe(32),
    )


def generate_certificate_authority(
    *,
    common_name: str = "cpctl-ca",
    key_size: int | None = None,
) -> CertificatePair:
    """Create a self-signed CA certificate and key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size or KEY_SIZE)
    subject = _subject(common_name)
    now = datetime.now(tz=UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return _to_pair(certificate, key)


def generate_certificate(
    ca: CertificatePair,
    *alt_names: str,
    common_name: str = "cpctl-client",
    key_size: int | None = None,
) -> CertificatePair:
    """Issue a certificate signed by *ca* valid for *alt_names*.

    Names that parse as IP addresses become IP SANs; everything else is a DNS
    SAN. The certificate is usable for both server and client authentication.
    """
    ca_cert = ca.load_certificate()
    ca_key = ca.load_private_key()
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size or KEY_SIZE)
    now = datetime.now(tz=UTC)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_subject(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    sans = _subject_alternative_names(alt_names)
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    certificate = builder.sign(ca_key, hashes.SHA256())
    return _to_pair(certificate, key)


def api_server_alt_names(namespace: str, endpoint: str | None = None) -> list[str]:
    """Return the names the API server certificate must cover."""
    names = [
        "localhost",
        API_SERVICE_NAME,
        f"{API_SERVICE_NAME}.{namespace}",
        f"{API_SERVICE_NAME}.{namespace}.svc",
        f"{API_SERVICE_NAME}.{namespace}.svc.cluster",
        f"{API_SERVICE_NAME}.{namespace}.svc.cluster.local",
        "127.0.0.1",
    ]
    host = endpoint_host(endpoint) if endpoint else None
    if host and host not in names:
        names.append(host)
    return names


def endpoint_host(endpoint: str) -> str:
    """Return the host portion of *endpoint* (URL or ``host:port``)."""
    parsed = urlparse(endpoint if "://" in endpoint else f"//{endpoint}")
    return parsed.hostname or endpoint


def _subject(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _subject_alternative_names(names: tuple[str, ...]) -> list[x509.GeneralName]:
    result: list[x509.GeneralName] = []
    seen: set[str] = set()
    for name in names:
        if not name or name in seen:
            continue
        seen.add(name)
        try:
            result.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            result.append(x509.DNSName(name))
    return result


def _to_pair(certificate: x509.Certificate, key: rsa.RSAPrivateKey) -> CertificatePair:
    return CertificatePair(
        certificate=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        private_key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii"),
    )


__all__ = [
    "CertificatePair",
    "DatabaseCredentials",
    "api_server_alt_names",
    "endpoint_host",
    "generate_certificate",
    "generate_certificate_authority",
    "generate_database_credentials",
    "generate_encryption_key",
]
