"""Root conftest for the vaultca test suite.

Provides an in-process signing oracle and custody service so the
signing engine, orchestrator and revocation services can be exercised
end to end without a network.
"""

from __future__ import annotations

import dataclasses
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

from vaultca.ca.base import CustodyNotFoundError, RemoteServiceError  # noqa: E402
from vaultca.ca.custody import (  # noqa: E402
    ISSUER_SELF,
    CustodyCertificate,
    CustodyClient,
    OperationStatus,
    PendingOperation,
)
from vaultca.ca.signer import RemoteSigner, SigningOracle  # noqa: E402
from vaultca.config.settings import IssuanceSettings  # noqa: E402
from vaultca.core.cancel import check_cancelled  # noqa: E402

_ORACLE_HASHES = {
    "256": hashes.SHA256(),
    "384": hashes.SHA384(),
    "512": hashes.SHA512(),
}

_CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
}

# Whole seconds, so validity comparisons survive X.509 encoding
NOW = datetime.now(UTC).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Signing oracle
# ---------------------------------------------------------------------------


class LocalSigningOracle(SigningOracle):
    """Signs with in-memory keys, answering the way a custody HSM does."""

    def __init__(self) -> None:
        self.keys: dict[str, object] = {}
        self.calls: list[tuple[str, str]] = []

    def add_key(self, locator: str, key) -> str:
        self.keys[locator] = key
        return locator

    async def sign(self, key_locator, digest, algorithm, *, cancel=None):
        check_cancelled(cancel)
        key = self.keys.get(key_locator)
        if key is None:
            msg = f"Unknown key {key_locator}"
            raise RemoteServiceError(msg)
        self.calls.append((key_locator, algorithm))
        hash_algo = _ORACLE_HASHES[algorithm[2:]]
        if isinstance(key, rsa.RSAPrivateKey):
            return key.sign(digest, padding.PKCS1v15(), Prehashed(hash_algo))
        der = key.sign(digest, ec.ECDSA(Prehashed(hash_algo)))
        r, s = decode_dss_signature(der)
        size = (key.curve.key_size + 7) // 8
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")


# ---------------------------------------------------------------------------
# Custody service
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class _Operation:
    name: str
    issuer_name: str
    status: OperationStatus
    key_locator: str
    csr: bytes | None = None

    def snapshot(self) -> PendingOperation:
        return PendingOperation(
            name=self.name,
            issuer_name=self.issuer_name,
            status=self.status,
            csr=self.csr,
        )


class FakeCustodyService(CustodyClient):
    """One vault: mints keys into the shared oracle, tracks operations."""

    def __init__(self, vault_url: str, oracle: LocalSigningOracle) -> None:
        self.vault_url = vault_url
        self.oracle = oracle
        self.certificates: dict[str, list[CustodyCertificate]] = {}
        self.operations: dict[str, _Operation] = {}
        self.started: list[tuple[str, object]] = []
        self.cancelled: list[str] = []
        self.disabled: list[tuple[str, str]] = []
        self.fail_disable = False
        self._counter = 0

    # -- helpers -----------------------------------------------------------

    def _new_key(self, name: str, policy) -> str:
        self._counter += 1
        if policy.key_type == "ec":
            key = ec.generate_private_key(_CURVES[policy.curve]())
        else:
            key = rsa.generate_private_key(public_exponent=65537, key_size=policy.key_size)
        return self.oracle.add_key(f"{self.vault_url}keys/{name}/{self._counter}", key)

    def _store(self, name: str, der: bytes, key_locator: str) -> CustodyCertificate:
        versions = self.certificates.setdefault(name, [])
        cert = CustodyCertificate(
            name=name,
            version=f"v{len(versions) + 1}",
            der=der,
            key_locator=key_locator,
        )
        versions.append(cert)
        return cert

    def key_for(self, name: str):
        return self.oracle.keys[self.certificates[name][-1].key_locator]

    # -- CustodyClient -----------------------------------------------------

    async def start_operation(self, name, policy, *, cancel=None):
        check_cancelled(cancel)
        self.started.append((name, policy))
        if policy.reuse_key:
            locator = self.certificates[name][-1].key_locator
        else:
            locator = self._new_key(name, policy)
        key = self.oracle.keys[locator]
        subject = x509.Name.from_rfc4514_string(policy.subject)

        if policy.issuer_name == ISSUER_SELF:
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(NOW)
                .not_valid_after(NOW + timedelta(days=365))
                .sign(key, hashes.SHA256())
            )
            self._store(name, cert.public_bytes(Encoding.DER), locator)
            op = _Operation(name, policy.issuer_name, OperationStatus.COMPLETED, locator)
        else:
            builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
            if policy.sans:
                builder = builder.add_extension(policy.sans.to_extension(), critical=False)
            csr = builder.sign(key, hashes.SHA256())
            op = _Operation(
                name,
                policy.issuer_name,
                OperationStatus.IN_PROGRESS,
                locator,
                csr.public_bytes(Encoding.DER),
            )
        self.operations[name] = op
        return op.snapshot()

    async def get_operation(self, name, *, cancel=None):
        check_cancelled(cancel)
        op = self.operations.get(name)
        if op is None:
            msg = f"No operation for {name}"
            raise CustodyNotFoundError(msg)
        return op.snapshot()

    async def wait_for_operation(self, name, *, cancel=None):
        return await self.get_operation(name, cancel=cancel)

    async def cancel_operation(self, name, *, cancel=None):
        check_cancelled(cancel)
        self.cancelled.append(name)
        self.operations[name].status = OperationStatus.CANCELLED

    async def disable_certificate(self, name, version, *, cancel=None):
        check_cancelled(cancel)
        if self.fail_disable:
            msg = "disable failed"
            raise RemoteServiceError(msg)
        self.disabled.append((name, version))
        self.certificates[name] = [
            dataclasses.replace(c, enabled=False) if c.version == version else c
            for c in self.certificates[name]
        ]

    async def merge_certificate(self, name, certificate_der, *, cancel=None):
        check_cancelled(cancel)
        op = self.operations.get(name)
        if op is None or op.status != OperationStatus.IN_PROGRESS:
            msg = f"No pending operation to merge into for {name}"
            raise RemoteServiceError(msg)
        cert = x509.load_der_x509_certificate(certificate_der)
        expected = self.oracle.keys[op.key_locator].public_key()
        if _spki(cert.public_key()) != _spki(expected):
            msg = "Merged certificate does not match the pending key"
            raise RemoteServiceError(msg)
        op.status = OperationStatus.COMPLETED
        return self._store(name, certificate_der, op.key_locator)

    async def get_certificate(self, name, *, cancel=None):
        check_cancelled(cancel)
        versions = self.certificates.get(name)
        if not versions:
            msg = f"No certificate named {name}"
            raise CustodyNotFoundError(msg)
        return versions[-1]

    async def get_version_count(self, name, *, cancel=None):
        check_cancelled(cancel)
        return len(self.certificates.get(name, []))


# ---------------------------------------------------------------------------
# Certificate builders
# ---------------------------------------------------------------------------


def _spki(public_key) -> bytes:
    return public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def make_name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_ca(
    common_name: str = "Test Root CA",
    *,
    key=None,
    path_length: int | None = None,
    not_before: datetime = NOW - timedelta(days=1),
    not_after: datetime = NOW + timedelta(days=365),
    with_ski: bool = True,
    ca: bool = True,
):
    """Self-signed CA certificate signed locally; returns ``(cert, key)``."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = make_name(common_name)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=path_length), critical=True)
    )
    if with_ski:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
    return builder.sign(key, hashes.SHA256()), key


def make_leaf(
    issuer_cert,
    issuer_key,
    common_name: str = "leaf.example.com",
    *,
    ocsp_signing: bool = False,
):
    """End-entity certificate signed locally by *issuer_key*; returns ``(cert, key)``."""
    key = ec.generate_private_key(ec.SECP256R1())
    builder = (
        x509.CertificateBuilder()
        .subject_name(make_name(common_name))
        .issuer_name(issuer_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(hours=1))
        .not_valid_after(NOW + timedelta(days=90))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
    )
    if ocsp_signing:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.OCSP_SIGNING]),
            critical=False,
        )
    return builder.sign(issuer_key, hashes.SHA256()), key


def make_csr(common_name: str = "leaf.example.com", *, key=None, extensions=()):
    key = key or ec.generate_private_key(ec.SECP256R1())
    builder = x509.CertificateSigningRequestBuilder().subject_name(make_name(common_name))
    for ext, critical in extensions:
        builder = builder.add_extension(ext, critical=critical)
    return builder.sign(key, hashes.SHA256()), key


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def oracle() -> LocalSigningOracle:
    return LocalSigningOracle()


@pytest.fixture()
def root_ca():
    """``(cert, key)`` for an EC P-256 root valid yesterday..next year."""
    return make_ca()


@pytest.fixture()
def root_signer(oracle, root_ca) -> RemoteSigner:
    cert, key = root_ca
    oracle.add_key("root-key", key)
    return RemoteSigner.for_certificate(oracle, "root-key", cert)


@pytest.fixture()
def issuance_settings() -> IssuanceSettings:
    # EC keeps key generation fast
    return IssuanceSettings(
        key_type="ec",
        root_key_size=4096,
        key_size=2048,
        curve="P-256",
        hash_algorithm="sha256",
        vault_domain="vault.azure.net",
    )


@pytest.fixture()
def vault(oracle) -> FakeCustodyService:
    return FakeCustodyService("https://test-vault.vault.azure.net/", oracle)


@pytest.fixture()
def config_data() -> dict:
    """Config document covering every section."""
    return {
        "issuance": {"key_type": "ec", "curve": "P-384", "hash_algorithm": "sha384"},
        "ocsp": {"signing_certificate": "ocsp-responder", "response_validity_seconds": 3600},
        "crl": {"validity_seconds": 86400},
        "revocation_cache": {"ttl_seconds": 120},
        "logging": {"level": "DEBUG", "format": "text"},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, config_data: dict) -> Path:
    """Write *config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg
