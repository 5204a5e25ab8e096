"""Resolution of the B2C ``SecurityCredential``.

Daraja expects the initiator password encrypted with the provider's public
certificate (RSA, PKCS#1 v1.5) and base64 encoded. Operators either paste the
resulting value into configuration or let the service derive it.
"""

import base64
from pathlib import Path
from typing import Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import padding

from betpulse.config import MpesaSettings


class CredentialSource(Protocol):
    def resolve_credential(self) -> str:
        ...


class PresharedCredential:
    def __init__(self, value: str):
        self._value = value

    def resolve_credential(self) -> str:
        return self._value


class CertificateCredential:
    """Derives the credential from an initiator password and an X.509 certificate."""

    def __init__(self, certificate_path: str, initiator_password: str):
        self._certificate_path = Path(certificate_path)
        self._initiator_password = initiator_password
        self._cached: Optional[str] = None

    def _load_certificate(self) -> x509.Certificate:
        path = self._certificate_path
        if not path.is_absolute():
            path = Path.cwd() / path
        if not path.exists():
            raise ValueError(f"M-Pesa certificate not found at {path}")
        data = path.read_bytes()
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)

    def resolve_credential(self) -> str:
        if self._cached is None:
            public_key = self._load_certificate().public_key()
            encrypted = public_key.encrypt(
                self._initiator_password.encode("utf-8"),
                padding.PKCS1v15(),
            )
            self._cached = base64.b64encode(encrypted).decode("ascii")
        return self._cached


def credential_from_settings(config: MpesaSettings) -> CredentialSource:
    """Pick the credential variant the configuration provides.

    Raises:
        ValueError: neither a credential nor a password/certificate pair is set.
    """
    if config.security_credential and config.security_credential.strip():
        return PresharedCredential(config.security_credential.strip())
    if config.initiator_password and config.certificate_path:
        return CertificateCredential(config.certificate_path, config.initiator_password)
    raise ValueError(
        "Set MPESA_SECURITY_CREDENTIAL, or MPESA_INITIATOR_PASSWORD and "
        "MPESA_CERTIFICATE_PATH to derive it"
    )
