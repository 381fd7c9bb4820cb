"""Shared certificate-building helpers.

Provides the OID-keyed :class:`ExtensionSet`, the extension merge used
by the signing engine, key-usage and extended-key-usage mappings,
serial number generation and normalisation, and builders for the
SubjectAltName, key identifier and revocation-pointer extensions.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from asn1crypto import core
from cryptography import x509
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtendedKeyUsageOID

from vaultca.ca import oids
from vaultca.ca.base import CAError, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes

_ExtT = TypeVar("_ExtT", bound=x509.ExtensionType)

# ---------------------------------------------------------------------------
# Key usage / EKU mappings
# ---------------------------------------------------------------------------

_KEY_USAGE_FIELDS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
    "encipher_only",
    "decipher_only",
)

_EKU_OIDS = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "code_signing": ExtendedKeyUsageOID.CODE_SIGNING,
    "email_protection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
    "time_stamping": ExtendedKeyUsageOID.TIME_STAMPING,
    "ocsp_signing": ExtendedKeyUsageOID.OCSP_SIGNING,
}

# Serial numbers are 20 octets (RFC 5280 §4.1.2.2 upper bound).
_SERIAL_BYTES = 20
_HEX_BASE = 16
_HEX_RE = re.compile(r"[0-9A-F]+")


def build_key_usage(usages: Iterable[str]) -> x509.KeyUsage:
    """Build an :class:`x509.KeyUsage` extension from usage names."""
    usage_set = set(usages)
    unknown = usage_set.difference(_KEY_USAGE_FIELDS)
    if unknown:
        msg = f"Unknown key usage {sorted(unknown)}; supported: {list(_KEY_USAGE_FIELDS)}"
        raise CAError(msg)
    ka = "key_agreement" in usage_set
    return x509.KeyUsage(
        digital_signature="digital_signature" in usage_set,
        content_commitment="content_commitment" in usage_set,
        key_encipherment="key_encipherment" in usage_set,
        data_encipherment="data_encipherment" in usage_set,
        key_agreement=ka,
        key_cert_sign="key_cert_sign" in usage_set,
        crl_sign="crl_sign" in usage_set,
        encipher_only="encipher_only" in usage_set if ka else False,
        decipher_only="decipher_only" in usage_set if ka else False,
    )


def build_eku(ekus: Iterable[str]) -> x509.ExtendedKeyUsage:
    """Build an :class:`x509.ExtendedKeyUsage` extension from usage names."""
    usages = []
    for name in ekus:
        oid = _EKU_OIDS.get(name)
        if oid is None:
            msg = f"Unknown extended key usage '{name}'; supported: {sorted(_EKU_OIDS)}"
            raise CAError(msg)
        usages.append(oid)
    return x509.ExtendedKeyUsage(usages)


def make_extension(value: x509.ExtensionType, *, critical: bool = False) -> x509.Extension:
    """Wrap an extension value with its OID and criticality."""
    return x509.Extension(value.oid, critical, value)


# ---------------------------------------------------------------------------
# ExtensionSet
# ---------------------------------------------------------------------------


class ExtensionSet:
    """Ordered extensions keyed by dotted OID.

    Inserting an extension whose OID is already present replaces the
    earlier one, so the set never carries duplicates.
    """

    def __init__(self, extensions: Iterable[x509.Extension] = ()) -> None:
        self._by_oid: dict[str, x509.Extension] = {}
        for ext in extensions:
            self.upsert(ext)

    @classmethod
    def from_csr(cls, csr: x509.CertificateSigningRequest) -> ExtensionSet:
        return cls(csr.extensions)

    def upsert(self, ext: x509.Extension) -> None:
        """Remove any extension sharing *ext*'s OID, then append *ext*."""
        key = ext.oid.dotted_string
        self._by_oid.pop(key, None)
        self._by_oid[key] = ext

    def get(self, oid: str) -> x509.Extension | None:
        return self._by_oid.get(oid)

    def get_value(self, ext_type: type[_ExtT]) -> _ExtT | None:
        """Typed accessor: return the value of *ext_type*, if present."""
        ext = self._by_oid.get(ext_type.oid.dotted_string)
        return None if ext is None else ext.value

    def oids(self) -> list[str]:
        return list(self._by_oid)

    def copy(self) -> ExtensionSet:
        return ExtensionSet(self._by_oid.values())

    def __contains__(self, oid: object) -> bool:
        return oid in self._by_oid

    def __iter__(self) -> Iterator[x509.Extension]:
        return iter(list(self._by_oid.values()))

    def __len__(self) -> int:
        return len(self._by_oid)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtensionSet):
            return NotImplemented
        return list(self._by_oid.items()) == list(other._by_oid.items())

    def __repr__(self) -> str:
        names = ", ".join(oids.describe(oid) for oid in self._by_oid)
        return f"ExtensionSet([{names}])"


def merge_extensions(
    existing: ExtensionSet | Iterable[x509.Extension],
    overrides: Iterable[x509.Extension] | None,
) -> ExtensionSet:
    """Merge *overrides* into *existing* by OID, returning a new set.

    An override replaces any existing extension with the same OID and
    is appended at the end; the rest keep their order.  *existing* is
    left untouched.
    """
    merged = ExtensionSet(existing)
    for ext in overrides or ():
        merged.upsert(ext)
    return merged


# ---------------------------------------------------------------------------
# Serial numbers
# ---------------------------------------------------------------------------


def generate_serial_number() -> int:
    """Return a positive serial built from 20 random bytes.

    The top bit of the first byte is cleared so the DER INTEGER stays
    non-negative without a padding byte.
    """
    while True:
        raw = bytearray(secrets.token_bytes(_SERIAL_BYTES))
        raw[0] &= 0x7F
        serial = int.from_bytes(raw, "big")
        if serial:
            return serial


def normalize_serial(serial: str) -> str:
    """Canonical hex serial: uppercase, separators and leading zeros removed."""
    cleaned = serial.strip().replace(":", "").replace(" ", "")
    trimmed = cleaned.lstrip("0")
    return trimmed.upper() if trimmed else "0"


def serial_to_hex(serial: int) -> str:
    """Format an integer serial the way revocation records store it."""
    return format(serial, "X")


def parse_hex_serial(serial: str) -> int:
    """Parse a stored hex serial, raising :class:`ValidationError` if malformed."""
    normalized = normalize_serial(serial)
    if not _HEX_RE.fullmatch(normalized):
        msg = f"Serial number '{serial}' is not valid hexadecimal"
        raise ValidationError(msg)
    return int(normalized, _HEX_BASE)


# ---------------------------------------------------------------------------
# Key identifiers
# ---------------------------------------------------------------------------


def subject_key_identifier(public_key: CertificatePublicKeyTypes) -> x509.SubjectKeyIdentifier:
    """SHA-1 key identifier of *public_key* (RFC 5280 §4.2.1.2 method 1)."""
    return x509.SubjectKeyIdentifier.from_public_key(public_key)


def issuer_key_identifier(issuer_cert: x509.Certificate) -> bytes:
    """The issuer's SKI, or one computed from its public key when absent."""
    try:
        ski = issuer_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    except x509.ExtensionNotFound:
        return subject_key_identifier(issuer_cert.public_key()).digest
    return ski.value.digest


def authority_key_identifier(issuer_cert: x509.Certificate) -> x509.AuthorityKeyIdentifier:
    """AKI pointing at *issuer_cert* by key id, issuer name and serial."""
    return x509.AuthorityKeyIdentifier(
        key_identifier=issuer_key_identifier(issuer_cert),
        authority_cert_issuer=[x509.DirectoryName(issuer_cert.issuer)],
        authority_cert_serial_number=issuer_cert.serial_number,
    )


def self_authority_key_identifier(
    subject: x509.Name,
    serial_number: int,
    public_key: CertificatePublicKeyTypes,
) -> x509.AuthorityKeyIdentifier:
    """AKI of a self-signed certificate, pointing at itself."""
    return x509.AuthorityKeyIdentifier(
        key_identifier=subject_key_identifier(public_key).digest,
        authority_cert_issuer=[x509.DirectoryName(subject)],
        authority_cert_serial_number=serial_number,
    )


# ---------------------------------------------------------------------------
# Subject alternative names and revocation pointers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubjectAlternativeNames:
    """DNS names, e-mail addresses and user principal names for a SAN."""

    dns_names: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    user_principal_names: tuple[str, ...] = ()

    @classmethod
    def from_extension(cls, san: x509.SubjectAlternativeName) -> SubjectAlternativeNames:
        upns = [
            core.UTF8String.load(name.value).native
            for name in san.get_values_for_type(x509.OtherName)
            if name.type_id.dotted_string == oids.UPN
        ]
        return cls(
            dns_names=tuple(san.get_values_for_type(x509.DNSName)),
            emails=tuple(san.get_values_for_type(x509.RFC822Name)),
            user_principal_names=tuple(upns),
        )

    def __bool__(self) -> bool:
        return bool(self.dns_names or self.emails or self.user_principal_names)

    def to_general_names(self) -> list[x509.GeneralName]:
        names: list[x509.GeneralName] = [x509.DNSName(n) for n in self.dns_names]
        names.extend(x509.RFC822Name(e) for e in self.emails)
        names.extend(
            x509.OtherName(x509.ObjectIdentifier(oids.UPN), core.UTF8String(upn).dump())
            for upn in self.user_principal_names
        )
        return names

    def to_extension(self) -> x509.SubjectAlternativeName:
        return x509.SubjectAlternativeName(self.to_general_names())


@dataclass(frozen=True)
class RevocationConfig:
    """Where relying parties find revocation status for issued certificates."""

    ocsp_url: str | None = None
    crl_url: str | None = None
    ca_issuers_url: str | None = None

    def to_extensions(self) -> list[x509.Extension]:
        """AIA and CDP extensions (both non-critical), when configured."""
        extensions: list[x509.Extension] = []
        access: list[x509.AccessDescription] = []
        if self.ocsp_url:
            access.append(
                x509.AccessDescription(
                    AuthorityInformationAccessOID.OCSP,
                    x509.UniformResourceIdentifier(self.ocsp_url),
                ),
            )
        if self.ca_issuers_url:
            access.append(
                x509.AccessDescription(
                    AuthorityInformationAccessOID.CA_ISSUERS,
                    x509.UniformResourceIdentifier(self.ca_issuers_url),
                ),
            )
        if access:
            extensions.append(make_extension(x509.AuthorityInformationAccess(access)))
        if self.crl_url:
            point = x509.DistributionPoint(
                full_name=[x509.UniformResourceIdentifier(self.crl_url)],
                relative_name=None,
                reasons=None,
                crl_issuer=None,
            )
            extensions.append(make_extension(x509.CRLDistributionPoints([point])))
        return extensions
