"""Typed, immutable settings for the CA toolkit.

Each section of the configuration document maps onto a frozen
dataclass.  The ``_build_*`` helpers turn the raw (already
env-resolved) dict into those dataclasses, filling in defaults for
anything the document leaves out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuanceSettings:
    """Key material and hashing used for new certificates."""

    key_type: str
    root_key_size: int
    key_size: int
    curve: str
    hash_algorithm: str
    vault_domain: str


def _build_issuance(data: dict | None) -> IssuanceSettings:
    d = data or {}
    return IssuanceSettings(
        key_type=d.get("key_type", "rsa"),
        root_key_size=d.get("root_key_size", 4096),
        key_size=d.get("key_size", 2048),
        curve=d.get("curve", "P-256"),
        hash_algorithm=d.get("hash_algorithm", "sha256"),
        vault_domain=d.get("vault_domain", "vault.azure.net"),
    )


# ---------------------------------------------------------------------------
# OCSP
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OcspSettings:
    """OCSP responder identity, response lifetime and request limits."""

    signing_certificate: str
    issuer_certificate: str
    response_validity_seconds: int
    max_post_bytes: int
    max_get_length: int

    @property
    def response_validity(self) -> timedelta:
        return timedelta(seconds=self.response_validity_seconds)


def _build_ocsp(data: dict | None) -> OcspSettings:
    d = data or {}
    return OcspSettings(
        signing_certificate=d.get("signing_certificate", "ocsp-signer"),
        issuer_certificate=d.get("issuer_certificate", "root-ca"),
        response_validity_seconds=d.get("response_validity_seconds", 600),
        max_post_bytes=d.get("max_post_bytes", 65536),
        max_get_length=d.get("max_get_length", 1365),
    )


# ---------------------------------------------------------------------------
# CRL
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CrlSettings:
    validity_seconds: int
    hash_algorithm: str

    @property
    def validity(self) -> timedelta:
        return timedelta(seconds=self.validity_seconds)


def _build_crl(data: dict | None) -> CrlSettings:
    d = data or {}
    return CrlSettings(
        validity_seconds=d.get("validity_seconds", 604800),
        hash_algorithm=d.get("hash_algorithm", "sha256"),
    )


# ---------------------------------------------------------------------------
# Revocation cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RevocationCacheSettings:
    """Lookup cache placed in front of the revocation store."""

    enabled: bool
    ttl_seconds: int
    max_entries: int = 10000

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)


def _build_revocation_cache(data: dict | None) -> RevocationCacheSettings:
    d = data or {}
    return RevocationCacheSettings(
        enabled=d.get("enabled", True),
        ttl_seconds=d.get("ttl_seconds", 600),
        max_entries=d.get("max_entries", 10000),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format)."""

    level: str
    format: str


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
    )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VaultcaSettings:
    """Top-level settings object."""

    issuance: IssuanceSettings
    ocsp: OcspSettings
    crl: CrlSettings
    revocation_cache: RevocationCacheSettings
    logging: LoggingSettings


def build_settings(data: dict | None) -> VaultcaSettings:
    """Build :class:`VaultcaSettings` from a configuration dict."""
    d = data or {}
    return VaultcaSettings(
        issuance=_build_issuance(d.get("issuance")),
        ocsp=_build_ocsp(d.get("ocsp")),
        crl=_build_crl(d.get("crl")),
        revocation_cache=_build_revocation_cache(d.get("revocation_cache")),
        logging=_build_logging(d.get("logging")),
    )
