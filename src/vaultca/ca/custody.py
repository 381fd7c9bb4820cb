"""Custody service interface.

The custody service (an HSM-backed vault) holds every private key and
tracks certificate *operations*: a request to mint a key pair and
either self-sign it or emit a CSR for an external issuer.  This module
defines the narrow async contract the orchestrator depends on; network
clients implement :class:`CustodyClient`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vaultca.ca.cert_utils import SubjectAlternativeNames
    from vaultca.core.cancel import CancellationToken

# Issuer names understood by the custody service
ISSUER_SELF = "Self"
ISSUER_UNKNOWN = "Unknown"


class OperationStatus(StrEnum):
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OperationState(StrEnum):
    """Pending-operation state of one certificate name."""

    NO_OPERATION = "no_operation"
    PENDING_UNKNOWN_ISSUER = "pending_unknown_issuer"
    PENDING_OTHER_ISSUER = "pending_other_issuer"
    COMPLETED = "completed"


@dataclass(frozen=True)
class CertificatePolicy:
    """What the custody service should mint for a new operation."""

    subject: str
    issuer_name: str = ISSUER_UNKNOWN
    sans: SubjectAlternativeNames | None = None
    key_type: str = "rsa"
    key_size: int = 2048
    curve: str = "P-256"
    reuse_key: bool = False
    exportable: bool = False


@dataclass(frozen=True)
class PendingOperation:
    """A certificate operation as reported by the custody service."""

    name: str
    issuer_name: str
    status: OperationStatus
    csr: bytes | None = None
    error: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == OperationStatus.IN_PROGRESS


@dataclass(frozen=True)
class CustodyCertificate:
    """A certificate version held by the custody service.

    Attributes
    ----------
    name:
        Logical certificate name.
    version:
        Opaque version identifier.
    der:
        DER certificate bytes of this version.
    key_locator:
        Identifier of the private key, passed to the signing oracle.
    enabled:
        Whether this version may be used.

    """

    name: str
    version: str
    der: bytes
    key_locator: str
    enabled: bool = True


class CustodyClient(abc.ABC):
    """Async client for one custody namespace (vault).

    Errors are raised as :class:`~vaultca.ca.base.RemoteServiceError`;
    :meth:`get_operation` and :meth:`get_certificate` raise
    :class:`~vaultca.ca.base.CustodyNotFoundError` when nothing exists.
    """

    @abc.abstractmethod
    async def start_operation(
        self,
        name: str,
        policy: CertificatePolicy,
        *,
        cancel: CancellationToken | None = None,
    ) -> PendingOperation:
        """Start minting a key pair (and CSR) under *name*."""

    @abc.abstractmethod
    async def get_operation(
        self,
        name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> PendingOperation:
        """Return the latest operation for *name*."""

    @abc.abstractmethod
    async def wait_for_operation(
        self,
        name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> PendingOperation:
        """Wait until the operation on *name* leaves the in-progress state."""

    @abc.abstractmethod
    async def cancel_operation(
        self,
        name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def disable_certificate(
        self,
        name: str,
        version: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def merge_certificate(
        self,
        name: str,
        certificate_der: bytes,
        *,
        cancel: CancellationToken | None = None,
    ) -> CustodyCertificate:
        """Complete the pending operation on *name* with a signed certificate."""

    @abc.abstractmethod
    async def get_certificate(
        self,
        name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> CustodyCertificate:
        """Return the current version of *name*."""

    @abc.abstractmethod
    async def get_version_count(
        self,
        name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> int: ...
