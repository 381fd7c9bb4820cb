"""Error hierarchy and shared enumerations for the CA toolkit.

Every failure raised by the signing engine, the remote signing adapter
and the issuance orchestrator derives from :class:`CAError`, so callers
can catch the whole family with one ``except`` clause while still
distinguishing caller mistakes (:class:`ArgumentError`) from policy
violations (:class:`NotSupportedError`, :class:`PathLengthViolation`)
and remote faults (:class:`RemoteServiceError`).
"""

from __future__ import annotations

from enum import StrEnum


class CAError(Exception):
    """Base class for all CA toolkit failures.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    retryable:
        Whether the failure is transient and the operation may be retried.

    """

    def __init__(self, detail: str, *, retryable: bool = False) -> None:
        self.detail = detail
        self.retryable = retryable
        super().__init__(detail)


class ArgumentError(CAError, ValueError):
    """Invalid caller input (missing CSR, missing issuer, bad reference)."""


class ValidationError(CAError):
    """Validity-window violations and corrupted stored data."""


class NotSupportedError(CAError):
    """Issuer is not a CA, or an unsupported key or hash algorithm."""


class PathLengthViolation(CAError):
    """Requested CA path length conflicts with the issuer's constraint."""


class RemoteServiceError(CAError):
    """Custody service or signing oracle failure.

    Collaborators wrapping a network client raise this (or a subclass);
    the toolkit propagates it untouched.
    """


class CustodyNotFoundError(RemoteServiceError):
    """The custody service has no such certificate or operation."""


class CertificateClass(StrEnum):
    """Which extension profile the orchestrator applies."""

    ROOT = "root"
    INTERMEDIATE = "intermediate"
    LEAF = "leaf"
