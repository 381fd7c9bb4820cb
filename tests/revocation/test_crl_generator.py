"""Tests for vaultca.revocation.crl."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes

from conftest import make_ca
from vaultca.ca.base import ArgumentError, ValidationError
from vaultca.ca.signer import RemoteSigner
from vaultca.config.settings import CrlSettings
from vaultca.core.cancel import CancellationToken, OperationCancelled
from vaultca.core.types import RevocationReason
from vaultca.revocation.crl import CrlGenerator
from vaultca.revocation.models import RevocationRecord
from vaultca.revocation.store import InMemoryRevocationStore

WEEK = timedelta(days=7)


@pytest.fixture()
def store() -> InMemoryRevocationStore:
    return InMemoryRevocationStore()


@pytest.fixture()
def generator(store) -> CrlGenerator:
    return CrlGenerator(store)


@pytest.fixture()
def issuer_dn(root_ca) -> str:
    return root_ca[0].subject.rfc4514_string()


class TestGenerateCrl:
    async def test_empty_crl(self, generator, root_ca, root_signer, issuer_dn):
        root, root_key = root_ca
        before = datetime.now(UTC).replace(microsecond=0)

        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root, root_signer, issuer_dn, WEEK),
        )

        assert len(crl) == 0
        assert crl.issuer == root.subject
        assert crl.is_signature_valid(root_key.public_key())
        assert crl.last_update_utc >= before
        assert crl.next_update_utc - crl.last_update_utc == WEEK
        assert isinstance(crl.signature_hash_algorithm, hashes.SHA256)

    async def test_entries_and_reasons(self, generator, store, root_ca, root_signer, issuer_dn):
        root, root_key = root_ca
        when = datetime(2024, 6, 1, tzinfo=UTC)
        await store.add_revocation(
            RevocationRecord.create("0A1B", "KeyCompromise", issuer_dn, revocation_date=when),
        )
        await store.add_revocation(RevocationRecord.create("FF", "Superseded", issuer_dn))
        await store.add_revocation(RevocationRecord.create("10", "Unspecified", issuer_dn))

        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root, root_signer, issuer_dn, WEEK),
        )

        assert len(crl) == 3
        assert crl.is_signature_valid(root_key.public_key())

        compromised = crl.get_revoked_certificate_by_serial_number(0x0A1B)
        assert compromised.revocation_date_utc == when
        reason = compromised.extensions.get_extension_for_class(x509.CRLReason).value.reason
        assert reason == x509.ReasonFlags.key_compromise

        superseded = crl.get_revoked_certificate_by_serial_number(0xFF)
        reason = superseded.extensions.get_extension_for_class(x509.CRLReason).value.reason
        assert reason == x509.ReasonFlags.superseded

        # unspecified is expressed by leaving reasonCode out
        unspecified = crl.get_revoked_certificate_by_serial_number(0x10)
        with pytest.raises(x509.ExtensionNotFound):
            unspecified.extensions.get_extension_for_class(x509.CRLReason)

    async def test_other_issuers_excluded(self, generator, store, root_ca, root_signer, issuer_dn):
        await store.add_revocation(RevocationRecord.create("01", 1, issuer_dn))
        await store.add_revocation(RevocationRecord.create("02", 1, "CN=Someone Else"))

        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root_ca[0], root_signer, issuer_dn, WEEK),
        )

        assert [entry.serial_number for entry in crl] == [1]

    async def test_crl_number_and_aki(self, generator, root_ca, root_signer, issuer_dn):
        root, _ = root_ca
        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root, root_signer, issuer_dn, WEEK, crl_number=42),
        )

        assert crl.extensions.get_extension_for_class(x509.CRLNumber).value.crl_number == 42
        aki = crl.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value
        ski = root.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
        assert aki.key_identifier == ski.digest

    async def test_no_crl_number_by_default(self, generator, root_ca, root_signer, issuer_dn):
        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root_ca[0], root_signer, issuer_dn, WEEK),
        )
        with pytest.raises(x509.ExtensionNotFound):
            crl.extensions.get_extension_for_class(x509.CRLNumber)

    async def test_aki_from_public_key_without_ski(self, generator, oracle):
        root, root_key = make_ca("No SKI CA", with_ski=False)
        oracle.add_key("noski-key", root_key)
        signer = RemoteSigner.for_certificate(oracle, "noski-key", root)

        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root, signer, root.subject.rfc4514_string(), WEEK),
        )

        aki = crl.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value
        expected = x509.AuthorityKeyIdentifier.from_issuer_public_key(root_key.public_key())
        assert aki.key_identifier == expected.key_identifier
        assert crl.is_signature_valid(root_key.public_key())

    async def test_sha384(self, generator, root_ca, root_signer, issuer_dn, oracle):
        root, root_key = root_ca
        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root, root_signer, issuer_dn, WEEK, "SHA-384"),
        )
        assert isinstance(crl.signature_hash_algorithm, hashes.SHA384)
        assert crl.is_signature_valid(root_key.public_key())
        assert oracle.calls == [("root-key", "ES384")]

    async def test_issuer_dn_differs_from_subject(self, generator, store, root_ca, root_signer):
        dn = "CN=Renamed CA,O=Example"
        await store.add_revocation(RevocationRecord.create("05", 1, dn))

        crl = x509.load_der_x509_crl(
            await generator.generate_crl(root_ca[0], root_signer, dn, WEEK),
        )

        assert crl.issuer.rfc4514_string() == dn
        assert len(crl) == 1


class TestGenerateCrlErrors:
    async def test_missing_issuer(self, generator, root_signer):
        with pytest.raises(ArgumentError):
            await generator.generate_crl(None, root_signer, "CN=X", WEEK)

    async def test_invalid_issuer_dn(self, generator, root_ca, root_signer):
        with pytest.raises(ArgumentError):
            await generator.generate_crl(root_ca[0], root_signer, "not a name", WEEK)

    async def test_bad_stored_serial(self, generator, store, root_ca, root_signer, issuer_dn):
        # Bypasses create(), which would reject the serial up front
        record = RevocationRecord(
            "XYZ", datetime.now(UTC), RevocationReason.KEY_COMPROMISE, issuer_dn,
        )
        await store.add_revocation(record)

        with pytest.raises(ValidationError, match="XYZ"):
            await generator.generate_crl(root_ca[0], root_signer, issuer_dn, WEEK)

    async def test_cancelled(self, generator, root_ca, root_signer, issuer_dn, oracle):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            await generator.generate_crl(root_ca[0], root_signer, issuer_dn, WEEK, cancel=token)
        assert oracle.calls == []


class TestGenerateForIssuer:
    async def test_uses_settings(self, generator, store, root_ca, root_signer, issuer_dn):
        root, root_key = root_ca
        await store.add_revocation(RevocationRecord.create("07", "CACompromise", issuer_dn))
        settings = CrlSettings(validity_seconds=3600, hash_algorithm="sha512")

        crl = x509.load_der_x509_crl(
            await generator.generate_for_issuer(root, root_signer, settings, crl_number=1),
        )

        assert len(crl) == 1
        assert crl.next_update_utc - crl.last_update_utc == timedelta(hours=1)
        assert isinstance(crl.signature_hash_algorithm, hashes.SHA512)
        assert crl.is_signature_valid(root_key.public_key())
