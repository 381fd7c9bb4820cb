"""CRL generation (RFC 5280).

Builds a Certificate Revocation List from every revocation record held
for an issuer and signs it through the remote signer.  Nothing is
cached: each call reads the store and produces a freshly signed CRL.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.x509 import (
    CertificateRevocationListBuilder,
    RevokedCertificateBuilder,
)

from vaultca.ca.base import ArgumentError, CAError, ValidationError
from vaultca.ca.cert_utils import parse_hex_serial
from vaultca.ca.signer import hash_algorithm_name, resolve_hash_algorithm
from vaultca.core.cancel import check_cancelled
from vaultca.core.types import RevocationReason

if TYPE_CHECKING:
    from datetime import timedelta

    from cryptography.hazmat.primitives import hashes

    from vaultca.ca.signer import RemoteSigner
    from vaultca.config.settings import CrlSettings
    from vaultca.core.cancel import CancellationToken
    from vaultca.revocation.models import RevocationRecord
    from vaultca.revocation.store import RevocationStore

log = logging.getLogger(__name__)

CRL_MEDIA_TYPE = "application/pkix-crl"


def _issuer_name(issuer_cert: x509.Certificate, issuer_dn: str) -> x509.Name:
    # Reuse the certificate's encoding when it matches, so the CRL issuer
    # is byte-identical to the certificate subject.
    if issuer_cert.subject.rfc4514_string() == issuer_dn:
        return issuer_cert.subject
    try:
        return x509.Name.from_rfc4514_string(issuer_dn)
    except ValueError as exc:
        msg = f"Invalid issuer distinguished name '{issuer_dn}': {exc}"
        raise ArgumentError(msg) from exc


def _authority_key_identifier(issuer_cert: x509.Certificate) -> x509.AuthorityKeyIdentifier:
    try:
        ski = issuer_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    except x509.ExtensionNotFound:
        return x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_cert.public_key())
    return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ski.value)


def _revoked_entry(record: RevocationRecord) -> x509.RevokedCertificate:
    serial = parse_hex_serial(record.serial_number)
    builder = RevokedCertificateBuilder().serial_number(serial).revocation_date(
        record.revocation_date,
    )
    # RFC 5280 5.3.1: omit reasonCode rather than encode unspecified
    if record.reason != RevocationReason.UNSPECIFIED:
        builder = builder.add_extension(
            x509.CRLReason(x509.ReasonFlags[record.reason.name.lower()]),
            critical=False,
        )
    try:
        return builder.build()
    except ValueError as exc:
        msg = f"Revocation record for serial {record.serial_number} is invalid: {exc}"
        raise ValidationError(msg) from exc


class CrlGenerator:
    """Produces signed CRLs from a :class:`RevocationStore`."""

    def __init__(self, store: RevocationStore) -> None:
        self._store = store

    async def generate_crl(  # noqa: PLR0913
        self,
        issuer_cert: x509.Certificate,
        signer: RemoteSigner,
        issuer_dn: str,
        validity_period: timedelta,
        hash_algorithm: str | hashes.HashAlgorithm = "sha256",
        crl_number: int | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Build and sign a CRL for *issuer_dn*.

        Parameters
        ----------
        issuer_cert:
            Certificate of the CA the CRL is issued for.
        signer:
            Remote signer for that CA's key.
        issuer_dn:
            RFC 4514 name the revocation records are filed under.
        validity_period:
            Gap between ``thisUpdate`` and ``nextUpdate``.
        hash_algorithm:
            Signature hash algorithm.
        crl_number:
            Value of the optional CRLNumber extension.

        Returns
        -------
        bytes
            DER-encoded ``CertificateList``.

        Raises
        ------
        ValidationError
            A stored serial number is not valid hexadecimal.

        """
        if issuer_cert is None:
            msg = "An issuer certificate is required"
            raise ArgumentError(msg)
        hash_name = hash_algorithm_name(hash_algorithm)
        issuer_name = _issuer_name(issuer_cert, issuer_dn)

        check_cancelled(cancel)
        records = await self._store.get_revocations_by_issuer(issuer_dn, cancel=cancel)

        now = datetime.now(UTC).replace(microsecond=0)
        next_update = now + validity_period
        builder = (
            CertificateRevocationListBuilder()
            .issuer_name(issuer_name)
            .last_update(now)
            .next_update(next_update)
        )
        for record in records:
            builder = builder.add_revoked_certificate(_revoked_entry(record))

        if crl_number is not None:
            builder = builder.add_extension(x509.CRLNumber(crl_number), critical=False)
        builder = builder.add_extension(_authority_key_identifier(issuer_cert), critical=False)

        try:
            placeholder = builder.sign(signer.placeholder_key(), resolve_hash_algorithm(hash_name))
        except ValueError as exc:
            msg = f"Failed to build CRL: {exc}"
            raise CAError(msg) from exc

        der_bytes = await signer.sign_structure(
            placeholder.tbs_certlist_bytes,
            hash_name,
            cancel=cancel,
        )

        log.info(
            "CRL rebuilt: %d revoked certificates, next update %s",
            len(records),
            next_update.isoformat(),
        )
        return der_bytes

    async def generate_for_issuer(
        self,
        issuer_cert: x509.Certificate,
        signer: RemoteSigner,
        settings: CrlSettings,
        crl_number: int | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """:meth:`generate_crl` for records filed under the issuer's own subject."""
        return await self.generate_crl(
            issuer_cert,
            signer,
            issuer_cert.subject.rfc4514_string(),
            settings.validity,
            settings.hash_algorithm,
            crl_number,
            cancel=cancel,
        )
