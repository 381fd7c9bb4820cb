"""Certificate signing engine.

Turns a PKCS#10 request (or a bare public key, for self-signed roots)
into a certificate signed by a :class:`~vaultca.ca.signer.RemoteSigner`.
The engine owns every policy decision that is independent of the
custody service:

- validity windows must nest inside the issuer's own window
- extensions from the CSR are merged with caller overrides by OID
- BasicConstraints, KeyUsage and EKU fall back to class defaults
- SubjectKeyIdentifier and AuthorityKeyIdentifier are always recomputed
- CA path lengths must shrink below a finite issuer constraint
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cryptography import x509

from vaultca.ca.base import (
    ArgumentError,
    CAError,
    NotSupportedError,
    PathLengthViolation,
    ValidationError,
)
from vaultca.ca.cert_utils import (
    ExtensionSet,
    authority_key_identifier,
    build_eku,
    build_key_usage,
    generate_serial_number,
    make_extension,
    merge_extensions,
    self_authority_key_identifier,
    serial_to_hex,
    subject_key_identifier,
)
from vaultca.ca.signer import resolve_hash_algorithm
from vaultca.core.cancel import check_cancelled

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes

    from vaultca.ca.signer import RemoteSigner
    from vaultca.core.cancel import CancellationToken

log = logging.getLogger(__name__)

# Used when a request carries no KeyUsage extension.
DEFAULT_CA_KEY_USAGE = ("key_cert_sign", "crl_sign", "digital_signature")
DEFAULT_LEAF_KEY_USAGE = ("digital_signature", "key_encipherment")
DEFAULT_EKU = ("server_auth", "client_auth")

ROOT_KEY_USAGE = ("digital_signature", "key_cert_sign", "crl_sign")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_utc(value: datetime, label: str) -> datetime:
    if not isinstance(value, datetime):
        msg = f"{label} must be a datetime, got {type(value).__name__}"
        raise ArgumentError(msg)
    # X.509 times carry whole seconds only
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC, microsecond=0)
    return value.astimezone(UTC).replace(microsecond=0)


def _check_window(not_before: datetime, not_after: datetime) -> None:
    if not_before >= not_after:
        msg = f"notBefore ({not_before.isoformat()}) must be earlier than notAfter ({not_after.isoformat()})"
        raise ValidationError(msg)


def _check_within_issuer(
    issuer_cert: x509.Certificate,
    not_before: datetime,
    not_after: datetime,
) -> None:
    issuer_start = issuer_cert.not_valid_before_utc
    issuer_end = issuer_cert.not_valid_after_utc
    if not_before < issuer_start:
        msg = (
            f"notBefore ({not_before.isoformat()}) precedes the issuer's "
            f"notBefore ({issuer_start.isoformat()})"
        )
        raise ValidationError(msg)
    if not_after > issuer_end:
        msg = (
            f"notAfter ({not_after.isoformat()}) exceeds the issuer's "
            f"notAfter ({issuer_end.isoformat()})"
        )
        raise ValidationError(msg)


def _load_csr(csr: bytes | x509.CertificateSigningRequest) -> x509.CertificateSigningRequest:
    if isinstance(csr, x509.CertificateSigningRequest):
        return csr
    try:
        if csr.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_csr(csr)
        return x509.load_der_x509_csr(csr)
    except ValueError as exc:
        msg = f"Could not parse certificate signing request: {exc}"
        raise ArgumentError(msg) from exc


def _parse_subject(subject: str | x509.Name) -> x509.Name:
    if isinstance(subject, x509.Name):
        return subject
    try:
        return x509.Name.from_rfc4514_string(subject)
    except ValueError as exc:
        msg = f"Invalid subject distinguished name '{subject}': {exc}"
        raise ArgumentError(msg) from exc


def _issuer_basic_constraints(issuer_cert: x509.Certificate) -> x509.BasicConstraints:
    try:
        bc = issuer_cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound as exc:
        msg = "issuer is not a CA: certificate has no BasicConstraints extension"
        raise NotSupportedError(msg) from exc
    if not bc.ca:
        msg = "issuer is not a CA"
        raise NotSupportedError(msg)
    return bc


def _check_path_length(
    issuer_bc: x509.BasicConstraints,
    requested: x509.BasicConstraints,
) -> None:
    if not requested.ca or issuer_bc.path_length is None:
        return
    if requested.path_length is None or requested.path_length >= issuer_bc.path_length:
        msg = (
            f"Requested path length {requested.path_length} must be less than "
            f"the issuer's path length {issuer_bc.path_length}"
        )
        raise PathLengthViolation(msg)


def _apply_defaults(extensions: ExtensionSet) -> x509.BasicConstraints:
    """Fill in BasicConstraints, KeyUsage and EKU when the request omits them."""
    bc = extensions.get_value(x509.BasicConstraints)
    if bc is None:
        bc = x509.BasicConstraints(ca=False, path_length=None)
        extensions.upsert(make_extension(bc, critical=True))

    if extensions.get_value(x509.KeyUsage) is None:
        usages = DEFAULT_CA_KEY_USAGE if bc.ca else DEFAULT_LEAF_KEY_USAGE
        log.warning(
            "Request carries no KeyUsage; applying default %s",
            ", ".join(usages),
        )
        extensions.upsert(make_extension(build_key_usage(usages), critical=True))

    if extensions.get_value(x509.ExtendedKeyUsage) is None:
        extensions.upsert(make_extension(build_eku(DEFAULT_EKU)))
    return bc


async def _sign_builder(
    builder: x509.CertificateBuilder,
    signer: RemoteSigner,
    hash_algorithm: str | hashes.HashAlgorithm,
    cancel: CancellationToken | None,
) -> x509.Certificate:
    """Produce TBS bytes locally, sign them remotely, parse the result."""
    try:
        placeholder = builder.sign(signer.placeholder_key(), resolve_hash_algorithm(hash_algorithm))
    except ValueError as exc:
        msg = f"Failed to build certificate: {exc}"
        raise CAError(msg) from exc

    cert_der = await signer.sign_structure(
        placeholder.tbs_certificate_bytes,
        hash_algorithm,
        cancel=cancel,
    )
    try:
        return x509.load_der_x509_certificate(cert_der)
    except ValueError as exc:
        msg = f"Remotely signed certificate could not be parsed: {exc}"
        raise CAError(msg) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def sign_request(  # noqa: PLR0913
    csr: bytes | x509.CertificateSigningRequest | None,
    issuer_cert: x509.Certificate | None,
    signer: RemoteSigner,
    not_before: datetime,
    not_after: datetime,
    hash_algorithm: str | hashes.HashAlgorithm = "sha256",
    extensions: Iterable[x509.Extension] | None = None,
    *,
    cancel: CancellationToken | None = None,
) -> x509.Certificate:
    """Sign *csr* with the key behind *signer*, issued by *issuer_cert*.

    Parameters
    ----------
    csr:
        DER (or PEM) PKCS#10 bytes, or a parsed request.
    issuer_cert:
        Certificate of the issuing CA; its validity bounds the new one.
    signer:
        Remote signer for the issuer's private key.
    not_before, not_after:
        Validity window.  Naive datetimes are taken as UTC.
    hash_algorithm:
        ``sha256``, ``sha384`` or ``sha512``.
    extensions:
        Overrides merged into the CSR's extensions by OID.

    Raises
    ------
    ArgumentError
        Missing CSR or issuer, or an unparseable CSR.
    ValidationError
        Empty window, or a window outside the issuer's validity.
    NotSupportedError
        Issuer is not a CA, or unsupported hash or key algorithm.
    PathLengthViolation
        The requested CA path length is not below the issuer's.

    """
    if csr is None:
        msg = "A certificate signing request is required"
        raise ArgumentError(msg)
    if issuer_cert is None:
        msg = "An issuer certificate is required"
        raise ArgumentError(msg)

    not_before = _as_utc(not_before, "notBefore")
    not_after = _as_utc(not_after, "notAfter")
    _check_window(not_before, not_after)
    _check_within_issuer(issuer_cert, not_before, not_after)
    hash_algo = resolve_hash_algorithm(hash_algorithm)

    request = _load_csr(csr)
    merged = merge_extensions(ExtensionSet.from_csr(request), extensions)
    issuer_bc = _issuer_basic_constraints(issuer_cert)
    requested_bc = _apply_defaults(merged)
    _check_path_length(issuer_bc, requested_bc)

    public_key = request.public_key()
    merged.upsert(make_extension(subject_key_identifier(public_key)))
    merged.upsert(make_extension(authority_key_identifier(issuer_cert)))

    serial_number = generate_serial_number()
    builder = (
        x509.CertificateBuilder()
        .subject_name(request.subject)
        .issuer_name(issuer_cert.subject)
        .public_key(public_key)
        .serial_number(serial_number)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    for ext in merged:
        builder = builder.add_extension(ext.value, critical=ext.critical)

    check_cancelled(cancel)
    cert = await _sign_builder(builder, signer, hash_algo, cancel)
    log.info(
        "Signed certificate: serial=%s, subject=%s, issuer=%s, valid %s..%s",
        serial_to_hex(serial_number),
        request.subject.rfc4514_string(),
        issuer_cert.subject.rfc4514_string(),
        not_before.isoformat(),
        not_after.isoformat(),
    )
    return cert


async def create_signed_ca_certificate(  # noqa: PLR0913
    subject: str | x509.Name,
    not_before: datetime,
    not_after: datetime,
    hash_algorithm: str | hashes.HashAlgorithm,
    public_key: CertificatePublicKeyTypes,
    signer: RemoteSigner,
    path_length: int | None = None,
    *,
    cancel: CancellationToken | None = None,
) -> x509.Certificate:
    """Build and remotely sign a self-signed root CA certificate.

    The AuthorityKeyIdentifier points back at the certificate itself
    (its own key identifier, name and serial).
    """
    if public_key is None:
        msg = "A public key is required"
        raise ArgumentError(msg)
    if path_length is not None and path_length < 0:
        msg = f"Path length must be non-negative, got {path_length}"
        raise ArgumentError(msg)

    name = _parse_subject(subject)
    not_before = _as_utc(not_before, "notBefore")
    not_after = _as_utc(not_after, "notAfter")
    _check_window(not_before, not_after)
    hash_algo = resolve_hash_algorithm(hash_algorithm)

    serial_number = generate_serial_number()
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(public_key)
        .serial_number(serial_number)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=path_length),
            critical=True,
        )
        .add_extension(build_key_usage(ROOT_KEY_USAGE), critical=True)
        .add_extension(subject_key_identifier(public_key), critical=False)
        .add_extension(
            self_authority_key_identifier(name, serial_number, public_key),
            critical=False,
        )
    )

    check_cancelled(cancel)
    cert = await _sign_builder(builder, signer, hash_algo, cancel)
    log.info(
        "Created self-signed CA certificate: serial=%s, subject=%s, path_length=%s",
        serial_to_hex(serial_number),
        name.rfc4514_string(),
        path_length,
    )
    return cert
