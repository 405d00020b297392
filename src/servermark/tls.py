"""Self-signed TLS material for secured sites.

Keys and certificates are generated by ``openssl`` inside the privileged
script, so private keys never pass through this process. This module only
names the files and inspects certificates that already exist. Nothing here
validates trust chains; local sites only need a certificate the browser can
be told to accept.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID

DEFAULT_KEY_SIZE = 2048
DEFAULT_VALIDITY_DAYS = 365


class TLSError(RuntimeError):
    """Raised when TLS material cannot be loaded."""


@dataclass(frozen=True)
class TLSMaterial:
    """Where the certificate and key for a domain live on disk."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class CertificateInfo:
    """Summary of an on-disk certificate."""

    path: Path
    common_name: str | None
    not_valid_before: datetime
    not_valid_after: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True when the certificate is past its validity window."""
        moment = now or datetime.now(UTC)
        return self.not_valid_after <= moment

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "common_name": self.common_name,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
        }


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM or DER certificate from *path*."""
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise TLSError(f"Cannot read certificate {path}: {exc}") from exc
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        try:
            return x509.load_der_x509_certificate(data)
        except ValueError as exc:
            raise TLSError(f"Cannot parse certificate {path}: {exc}") from exc


def describe_certificate(path: Path) -> CertificateInfo:
    """Return subject and validity details for the certificate at *path*."""
    cert = load_certificate(path)
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    common_name = str(names[0].value) if names else None
    return CertificateInfo(
        path=path,
        common_name=common_name,
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
    )


__all__ = [
    "CertificateInfo",
    "TLSError",
    "TLSMaterial",
    "describe_certificate",
    "load_certificate",
]
