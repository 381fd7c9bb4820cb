"""Certificate signing engine, remote signing adapter and orchestrator.

Exports the error hierarchy, the signing entry points and the
orchestrator.
"""

from vaultca.ca.base import (
    ArgumentError,
    CAError,
    CertificateClass,
    CustodyNotFoundError,
    NotSupportedError,
    PathLengthViolation,
    RemoteServiceError,
    ValidationError,
)
from vaultca.ca.factory import create_signed_ca_certificate, sign_request
from vaultca.ca.orchestrator import CertificateOrchestrator
from vaultca.ca.signer import RemoteSigner, SigningOracle

__all__ = [
    "ArgumentError",
    "CAError",
    "CertificateClass",
    "CertificateOrchestrator",
    "CustodyNotFoundError",
    "NotSupportedError",
    "PathLengthViolation",
    "RemoteServiceError",
    "RemoteSigner",
    "SigningOracle",
    "ValidationError",
    "create_signed_ca_certificate",
    "sign_request",
]
