"""Revocation records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from vaultca.ca.cert_utils import normalize_serial, parse_hex_serial
from vaultca.core.types import RevocationReason


@dataclass(frozen=True)
class RevocationRecord:
    """One revoked certificate, as read by the OCSP responder and CRL generator.

    Attributes
    ----------
    serial_number:
        Hex serial, uppercase with leading zeros trimmed.
    revocation_date:
        When the certificate was revoked (timezone-aware).
    reason:
        RFC 5280 §5.3.1 reason code.
    issuer_distinguished_name:
        RFC 4514 string of the issuing CA's subject.
    comments:
        Free-form operator note.

    """

    serial_number: str
    revocation_date: datetime
    reason: RevocationReason
    issuer_distinguished_name: str
    comments: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "serial_number", normalize_serial(self.serial_number))
        object.__setattr__(self, "reason", RevocationReason(self.reason))
        if self.revocation_date.tzinfo is None:
            object.__setattr__(self, "revocation_date", self.revocation_date.replace(tzinfo=UTC))

    @classmethod
    def create(
        cls,
        serial_number: str,
        reason: RevocationReason | str | int,
        issuer_distinguished_name: str,
        comments: str | None = None,
        revocation_date: datetime | None = None,
    ) -> RevocationRecord:
        """Record a revocation now.

        Validates the serial as hexadecimal, so malformed input is
        rejected here rather than when a CRL is later generated.
        """
        parse_hex_serial(serial_number)
        return cls(
            serial_number=serial_number,
            revocation_date=revocation_date or datetime.now(UTC).replace(microsecond=0),
            reason=RevocationReason.parse(reason),
            issuer_distinguished_name=issuer_distinguished_name,
            comments=comments,
        )
