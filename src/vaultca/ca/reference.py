"""References to certificates held in a custody namespace."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from vaultca.ca.base import ArgumentError

DEFAULT_VAULT_DOMAIN = "vault.azure.net"

_CERTIFICATE_NAME_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9\-]{0,126}")
_VAULT_NAME_RE = re.compile(r"[a-z][a-z0-9\-]+[a-z0-9]+")
_VAULT_NAME_MIN = 3
_VAULT_NAME_MAX = 24
_URI_COLLECTIONS = ("certificates", "secrets")


def is_valid_certificate_name(name: str | None) -> bool:
    """1-127 characters, starting with a letter; letters, digits and hyphens."""
    return bool(name) and _CERTIFICATE_NAME_RE.fullmatch(name) is not None


def vault_url_from_name(vault: str, domain: str = DEFAULT_VAULT_DOMAIN) -> str:
    """Expand a bare vault name to its URL; full ``https://`` URLs pass through."""
    if not vault or not vault.strip():
        msg = "Vault name must not be empty"
        raise ArgumentError(msg)
    if vault.lower().startswith("https://"):
        return vault if vault.endswith("/") else f"{vault}/"
    if (
        not _VAULT_NAME_MIN <= len(vault) <= _VAULT_NAME_MAX
        or _VAULT_NAME_RE.fullmatch(vault) is None
    ):
        msg = f"Vault name '{vault}' must be 3-24 characters of lowercase letters, digits and hyphens"
        raise ArgumentError(msg)
    return f"https://{vault}.{domain}/"


@dataclass(frozen=True)
class CertificateReference:
    """A certificate name inside a specific vault."""

    vault_url: str
    name: str

    def __post_init__(self) -> None:
        if not is_valid_certificate_name(self.name):
            msg = (
                f"'{self.name}' is not a valid certificate name; names must be 1-127 "
                "characters, start with a letter, and contain only letters, digits and hyphens"
            )
            raise ArgumentError(msg)

    @classmethod
    def from_names(
        cls,
        vault: str,
        name: str,
        domain: str = DEFAULT_VAULT_DOMAIN,
    ) -> CertificateReference:
        return cls(vault_url_from_name(vault, domain), name)

    @classmethod
    def from_uri(cls, uri: str) -> CertificateReference:
        """Parse ``https://host/certificates/<name>[/<version>]``."""
        parts = urlsplit(uri)
        segments = [s for s in parts.path.split("/") if s]
        if (
            parts.scheme != "https"
            or not parts.netloc
            or len(segments) < 2  # noqa: PLR2004
            or segments[0].lower() not in _URI_COLLECTIONS
        ):
            msg = f"'{uri}' is not a certificate URI (https://<vault>/certificates/<name>)"
            raise ArgumentError(msg)
        return cls(f"{parts.scheme}://{parts.netloc}/", segments[1])

    @classmethod
    def parse(cls, value: str, domain: str = DEFAULT_VAULT_DOMAIN) -> CertificateReference:
        """Parse ``name@vault`` or a full certificate URI."""
        if not value or not value.strip():
            msg = "Certificate reference must not be empty"
            raise ArgumentError(msg)
        if "@" in value and not value.lower().startswith("https://"):
            name, _, vault = value.partition("@")
            if name and vault and "@" not in vault:
                return cls.from_names(vault, name, domain)
        return cls.from_uri(value)

    @property
    def certificate_uri(self) -> str:
        return f"{self.vault_url}certificates/{self.name}"

    def __str__(self) -> str:
        return self.certificate_uri
