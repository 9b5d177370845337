"""
X.509 helpers shared by the certificate store and acquirer.
"""

import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtensionOID

from certdeploy.models.certificate import CertificateIssuer

logger = logging.getLogger(__name__)

PEM_CERT_END = b"-----END CERTIFICATE-----"


def parse_certificate(cert_pem: bytes) -> dict:
    """
    Parse the first certificate of a PEM bundle and extract details.

    Args:
        cert_pem: PEM-encoded certificate or fullchain

    Returns:
        Dictionary with certificate details
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    # Extract SANs
    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = [str(name.value) for name in san_ext.value]
    except x509.ExtensionNotFound:
        pass

    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "self_issued": cert.issuer == cert.subject,
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "alt_names": alt_names,
        "fingerprint_sha256": cert.fingerprint(hashes.SHA256()).hex(),
    }


def validate_certificate_key_match(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return cert_bytes == key_bytes


def detect_issuer(cert_info: dict) -> CertificateIssuer:
    """Guess the issuer class of a certificate lacking stored metadata."""
    if cert_info.get("self_issued"):
        return CertificateIssuer.SELF_SIGNED
    if "STAGING" in cert_info.get("issuer", "").upper():
        return CertificateIssuer.LETSENCRYPT_STAGING
    return CertificateIssuer.LETSENCRYPT_PRODUCTION


def split_fullchain(fullchain_pem: bytes) -> tuple[bytes, bytes]:
    """
    Split a fullchain bundle into leaf certificate and intermediate chain.

    Returns:
        Tuple of (cert_pem, chain_pem); chain_pem is empty when there is
        no intermediate
    """
    certs = fullchain_pem.split(PEM_CERT_END)
    cert_pem = certs[0].strip() + b"\n" + PEM_CERT_END + b"\n"
    chain_pem = PEM_CERT_END.join(certs[1:])
    if chain_pem.strip():
        chain_pem = chain_pem.strip() + b"\n"
    else:
        chain_pem = b""
    return cert_pem, chain_pem
