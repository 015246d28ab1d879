"""
Certificate and key helpers.

CSR generation, certificate parsing, key/certificate matching,
thumbprints and PEM to PKCS#12 conversion for the Windows store.
"""

import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtensionOID, NameOID

from core.validation import normalize_domain

logger = logging.getLogger(__name__)

PEM_CERT_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_CERT_END = "-----END CERTIFICATE-----"
MAX_COMMON_NAME_LENGTH = 64


class CertificateFormatError(Exception):
    """PEM data that cannot be parsed or converted."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


def generate_key_and_csr(domain: str) -> tuple[str, str]:
    """
    Create an RSA-2048 key and a CSR carrying only the common name.

    Names longer than the 64 characters a common name may hold go into a
    subjectAltName with an empty subject instead.

    Args:
        domain: Primary domain, converted to punycode

    Returns:
        (private key PEM, CSR PEM)

    Raises:
        CertificateFormatError: if the CSR cannot be built for the domain
    """
    name = normalize_domain(domain)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    builder = x509.CertificateSigningRequestBuilder()
    try:
        if len(name) <= MAX_COMMON_NAME_LENGTH:
            builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)]))
        else:
            builder = builder.subject_name(x509.Name([]))
            builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(name)]), critical=True)
        csr = builder.sign(private_key, hashes.SHA256())
    except ValueError as e:
        raise CertificateFormatError(f"Cannot build a CSR for {name}: {e}")

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem.decode("ascii"), csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def load_certificate(cert_pem: str) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    except ValueError as e:
        raise CertificateFormatError(f"Invalid certificate PEM: {e}")


def load_private_key(key_pem: str):
    try:
        return serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise CertificateFormatError(f"Invalid private key PEM: {e}")


def parse_certificate(cert_pem: str) -> dict:
    """
    Parse a PEM certificate and extract details.

    Returns:
        Dictionary with subject CN, SANs, serial number, validity and thumbprint
    """
    cert = load_certificate(cert_pem)

    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        "common_name": common_names[0].value if common_names else "",
        "alt_names": alt_names,
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "thumbprint": cert.fingerprint(hashes.SHA1()).hex().upper(),
    }


def compute_thumbprint(cert_pem: str) -> str:
    """SHA-1 of the DER encoding, uppercase hex, as the Windows store reports it."""
    return load_certificate(cert_pem).fingerprint(hashes.SHA1()).hex().upper()


def verify_key_matches(cert_pem: str, key_pem: str) -> bool:
    """
    Check that a private key belongs to a certificate.

    Raises:
        CertificateFormatError: if either side cannot be parsed
    """
    cert_public = load_certificate(cert_pem).public_key()
    key_public = load_private_key(key_pem).public_key()

    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return cert_public.public_bytes(serialization.Encoding.DER, fmt) == key_public.public_bytes(
        serialization.Encoding.DER, fmt
    )


def split_pem_chain(chain_pem: str) -> list[x509.Certificate]:
    """Load every certificate in a concatenated PEM chain; empty input gives an empty list."""
    if not chain_pem or PEM_CERT_BEGIN not in chain_pem:
        return []
    try:
        return x509.load_pem_x509_certificates(chain_pem.encode("utf-8"))
    except ValueError as e:
        raise CertificateFormatError(f"Invalid CA chain PEM: {e}")


@dataclass
class PfxBundle:
    """A PKCS#12 file on disk and the password protecting it."""
    path: Path
    password: str

    def cleanup(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove temporary PFX {self.path}: {e}")


class PfxConverter:
    """Converts PEM material into a password-protected PFX file."""

    def __init__(self, temp_dir: str | None = None):
        self.temp_dir = temp_dir

    def to_pfx_bytes(self, cert_pem: str, key_pem: str, chain_pem: str, password: str) -> bytes:
        cert = load_certificate(cert_pem)
        key = load_private_key(key_pem)
        if not verify_key_matches(cert_pem, key_pem):
            raise CertificateFormatError(
                "Private key does not match certificate",
                suggestion="Re-request the certificate so a fresh key pair is issued",
            )
        cas = split_pem_chain(chain_pem)

        # 3DES/SHA1 keeps the bundle importable on older Windows Server releases
        encryption = (
            serialization.PrivateFormat.PKCS12.encryption_builder()
            .kdf_rounds(2000)
            .key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC)
            .hmac_hash(hashes.SHA1())
            .build(password.encode("utf-8"))
        )
        return pkcs12.serialize_key_and_certificates(
            name=None, key=key, cert=cert, cas=cas or None, encryption_algorithm=encryption
        )

    def convert(self, cert_pem: str, key_pem: str, chain_pem: str = "") -> PfxBundle:
        """
        Write a PFX to a private temporary file.

        The caller owns the returned bundle and must call ``cleanup()``.
        """
        password = secrets.token_urlsafe(24)
        data = self.to_pfx_bytes(cert_pem, key_pem, chain_pem, password)

        fd, name = tempfile.mkstemp(suffix=".pfx", prefix="cert-", dir=self.temp_dir)
        try:
            os.chmod(name, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as e:
            Path(name).unlink(missing_ok=True)
            raise CertificateFormatError(f"Failed to write PFX file: {e}")
        return PfxBundle(path=Path(name), password=password)
