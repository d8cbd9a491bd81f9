"""Node identity: a self-signed ECDSA certificate and the device ID derived from it."""

from __future__ import annotations

import datetime
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .device_id import DeviceID
from .errors import CertificateError, CertificateNotFound
from .locations import Locations

logger = logging.getLogger(__name__)

DEFAULT_COMMON_NAME = "nodeseed"
CERT_VALIDITY_DAYS = 20 * 365


@dataclass(frozen=True)
class NodeIdentity:
    device_id: DeviceID
    certificate: x509.Certificate = field(repr=False)
    private_key: CertificateIssuerPrivateKeyTypes = field(repr=False)
    cert_path: Path
    key_path: Path
    generated: bool = False

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)


def device_id_for(certificate: x509.Certificate) -> DeviceID:
    return DeviceID.from_certificate_bytes(certificate.public_bytes(serialization.Encoding.DER))


def _public_bytes(key: object) -> bytes:
    return key.public_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_certificate(
    cert_path: Path, key_path: Path
) -> tuple[list[x509.Certificate], CertificateIssuerPrivateKeyTypes]:
    """Load a certificate chain and its private key from PEM files.

    Raises ``CertificateNotFound`` only when both files are absent. Any other
    problem, including just one of the two files missing, is a
    ``CertificateError``.
    """
    try:
        cert_exists = cert_path.exists()
        key_exists = key_path.exists()
    except OSError as e:
        raise CertificateError(f"checking certificate material: {e}") from e
    if not cert_exists and not key_exists:
        raise CertificateNotFound(f"no certificate at {cert_path} and no key at {key_path}")
    if not cert_exists:
        raise CertificateError(f"key {key_path} exists but certificate {cert_path} is missing")
    if not key_exists:
        raise CertificateError(f"certificate {cert_path} exists but key {key_path} is missing")

    try:
        cert_pem = cert_path.read_bytes()
        key_pem = key_path.read_bytes()
    except OSError as e:
        raise CertificateError(f"reading certificate material: {e}") from e

    try:
        chain = x509.load_pem_x509_certificates(cert_pem)
    except ValueError as e:
        raise CertificateError(f"parsing {cert_path}: {e}") from e
    try:
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CertificateError(f"parsing {key_path}: {e}") from e

    if _public_bytes(private_key.public_key()) != _public_bytes(chain[0].public_key()):
        raise CertificateError(f"private key {key_path} does not match certificate {cert_path}")
    return chain, private_key  # type: ignore[return-value]


def generate_certificate(
    cert_path: Path, key_path: Path, common_name: str = DEFAULT_COMMON_NAME
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Create a self-signed P-256 certificate and write it next to its key.

    The key file is created with mode 0600 and refuses to replace an
    existing file.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    not_before = datetime.datetime.now(datetime.timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)

    # O_EXCL: never clobber a key that appeared since we last looked
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, stat.S_IRUSR | stat.S_IWUSR)
    cert_started = False
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(key_pem)
        cert_started = True
        cert_path.write_bytes(cert_pem)
    except BaseException:
        # The key is ours (O_EXCL); a key without its certificate would block every later run
        key_path.unlink(missing_ok=True)
        if cert_started:
            cert_path.unlink(missing_ok=True)
        raise
    return certificate, private_key


def ensure_identity(locations: Locations, common_name: str = DEFAULT_COMMON_NAME) -> NodeIdentity:
    """Load the node's certificate, generating one only if none exists."""
    cert_path, key_path = locations.cert_file, locations.key_file
    generated = False
    try:
        chain, private_key = load_certificate(cert_path, key_path)
        certificate = chain[0]
        logger.warning("Key exists; will not overwrite.")
    except CertificateNotFound:
        logger.debug("No certificate in %s, generating a new one", locations.base_dir)
        try:
            certificate, private_key = generate_certificate(cert_path, key_path, common_name)
        except OSError as e:
            raise CertificateError(f"writing certificate: {e}") from e
        generated = True

    device_id = device_id_for(certificate)
    logger.info("Device ID: %s", device_id)
    return NodeIdentity(
        device_id=device_id,
        certificate=certificate,
        private_key=private_key,
        cert_path=cert_path,
        key_path=key_path,
        generated=generated,
    )
