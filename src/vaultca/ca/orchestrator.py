"""Issuance orchestrator -- drives certificate lifecycles at the custody service.

The custody service mints every key pair.  Issuing a certificate is
therefore a multi-step conversation:

1. make sure a CSR-producing operation is pending for the target name
   (reusing a compatible one, cancelling an incompatible one)
2. sign that CSR with the issuer's remote key via the signing engine
3. merge the signed certificate back into the pending operation

Root bootstrap is special because nothing can sign the first CSR: a
throwaway self-signed certificate mints the key, a second operation
against the same key yields the CSR, and the engine builds the real
self-signed root from the CSR's public key.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID

from vaultca.ca.base import (
    ArgumentError,
    CertificateClass,
    CustodyNotFoundError,
    RemoteServiceError,
    ValidationError,
)
from vaultca.ca.cert_utils import (
    SubjectAlternativeNames,
    build_eku,
    build_key_usage,
    make_extension,
)
from vaultca.ca.custody import (
    ISSUER_SELF,
    ISSUER_UNKNOWN,
    CertificatePolicy,
    OperationState,
    OperationStatus,
)
from vaultca.ca.factory import create_signed_ca_certificate, sign_request
from vaultca.ca.reference import CertificateReference
from vaultca.ca.signer import RemoteSigner
from vaultca.config.settings import build_settings
from vaultca.core.cancel import check_cancelled
from vaultca.logging.sanitize import sanitize_for_logs
from vaultca.logging.setup import bind_operation
from vaultca.revocation.ocsp import OcspResponder

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from vaultca.ca.cert_utils import RevocationConfig
    from vaultca.ca.custody import CustodyClient, PendingOperation
    from vaultca.ca.signer import SigningOracle
    from vaultca.config.settings import IssuanceSettings, OcspSettings
    from vaultca.core.cancel import CancellationToken
    from vaultca.revocation.store import RevocationStore

log = logging.getLogger(__name__)

INTERMEDIATE_KEY_USAGE = ("key_cert_sign", "crl_sign", "digital_signature")
LEAF_KEY_USAGE = ("digital_signature", "key_encipherment")
TLS_EKU = ("server_auth", "client_auth")


def intermediate_extensions(path_length: int | None) -> list[x509.Extension]:
    """Extension profile for subordinate CA certificates."""
    return [
        make_extension(x509.BasicConstraints(ca=True, path_length=path_length), critical=True),
        make_extension(build_key_usage(INTERMEDIATE_KEY_USAGE), critical=True),
        make_extension(build_eku(TLS_EKU)),
    ]


def leaf_extensions(*, ocsp_signing: bool = False) -> list[x509.Extension]:
    """Extension profile for end-entity certificates.

    OCSP responder certificates carry exactly the OCSPSigning EKU,
    marked critical, plus ``id-pkix-ocsp-nocheck`` so clients do not
    try to check the responder's own status.
    """
    extensions = [
        make_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True),
        make_extension(build_key_usage(LEAF_KEY_USAGE), critical=True),
    ]
    if ocsp_signing:
        extensions.append(make_extension(build_eku(("ocsp_signing",)), critical=True))
        extensions.append(make_extension(x509.OCSPNoCheck()))
    else:
        extensions.append(make_extension(build_eku(TLS_EKU)))
    return extensions


class CertificateOrchestrator:
    """Creates, issues and renews certificates whose keys live in custody.

    Parameters
    ----------
    custody_factory:
        Returns a :class:`~vaultca.ca.custody.CustodyClient` for a vault URL.
    oracle_factory:
        Returns a :class:`~vaultca.ca.signer.SigningOracle` for a key locator.
    settings:
        Key type, sizes and hash algorithm for new certificates.

    """

    def __init__(
        self,
        custody_factory: Callable[[str], CustodyClient],
        oracle_factory: Callable[[str], SigningOracle],
        settings: IssuanceSettings | None = None,
    ) -> None:
        self._custody_factory = custody_factory
        self._oracle_factory = oracle_factory
        self._settings = settings or build_settings(None).issuance

    # -- helpers ------------------------------------------------------------

    def _policy(
        self,
        subject: str,
        issuer_name: str,
        sans: SubjectAlternativeNames | None = None,
        *,
        key_size: int | None = None,
        reuse_key: bool = False,
    ) -> CertificatePolicy:
        return CertificatePolicy(
            subject=subject,
            issuer_name=issuer_name,
            sans=sans,
            key_type=self._settings.key_type,
            key_size=key_size or self._settings.key_size,
            curve=self._settings.curve,
            reuse_key=reuse_key,
            exportable=False,
        )

    def _signer_for(self, key_locator: str, public_key_source: x509.Certificate) -> RemoteSigner:
        return RemoteSigner.for_certificate(
            self._oracle_factory(key_locator),
            key_locator,
            public_key_source,
        )

    async def _pending_state(
        self,
        client: CustodyClient,
        name: str,
        cancel: CancellationToken | None,
    ) -> tuple[OperationState, PendingOperation | None]:
        try:
            op = await client.get_operation(name, cancel=cancel)
        except CustodyNotFoundError:
            log.debug("No pending operation found for certificate %s", name)
            return OperationState.NO_OPERATION, None
        if not op.is_pending:
            return OperationState.COMPLETED, op
        if op.issuer_name == ISSUER_UNKNOWN:
            return OperationState.PENDING_UNKNOWN_ISSUER, op
        return OperationState.PENDING_OTHER_ISSUER, op

    async def _reconcile_pending(
        self,
        client: CustodyClient,
        name: str,
        cancel: CancellationToken | None,
    ) -> bool:
        """Resolve any pending operation on *name*; True if a new one must start."""
        state, op = await self._pending_state(client, name, cancel)
        if state is OperationState.PENDING_UNKNOWN_ISSUER:
            log.info("Continuing pending CSR operation for certificate %s", name)
            return False
        if state is OperationState.PENDING_OTHER_ISSUER and op is not None:
            log.warning(
                "Cancelling incompatible pending operation for certificate %s (issuer %s)",
                name,
                op.issuer_name,
            )
            await client.cancel_operation(name, cancel=cancel)
        return True

    # -- public API ---------------------------------------------------------

    def reference(self, vault: str, name: str) -> CertificateReference:
        """Reference to *name* in *vault*; bare vault names use the configured domain."""
        return CertificateReference.from_names(vault, name, self._settings.vault_domain)

    async def load_certificate(
        self,
        ref: CertificateReference,
        *,
        cancel: CancellationToken | None = None,
    ) -> tuple[x509.Certificate, RemoteSigner]:
        """Current version of *ref* and a signer for its key."""
        bundle = await self._custody_factory(ref.vault_url).get_certificate(ref.name, cancel=cancel)
        cert = x509.load_der_x509_certificate(bundle.der)
        return cert, self._signer_for(bundle.key_locator, cert)

    async def load_ocsp_responder(
        self,
        vault: str,
        store: RevocationStore,
        settings: OcspSettings,
        *,
        cancel: CancellationToken | None = None,
    ) -> OcspResponder:
        """Build an :class:`OcspResponder` from the certificates named in *settings*.

        Both the signing and the issuer certificate are read from *vault*.
        When the two names are the same the issuer signs its own responses.
        """
        signing_cert, signer = await self.load_certificate(
            self.reference(vault, settings.signing_certificate),
            cancel=cancel,
        )
        if settings.issuer_certificate == settings.signing_certificate:
            issuer_cert = signing_cert
        else:
            issuer_cert, _ = await self.load_certificate(
                self.reference(vault, settings.issuer_certificate),
                cancel=cancel,
            )
        if signing_cert != issuer_cert and signing_cert.issuer != issuer_cert.subject:
            msg = (
                f"OCSP signing certificate {settings.signing_certificate} was not issued "
                f"by {settings.issuer_certificate}"
            )
            raise ValidationError(msg)
        log.info(
            "Loaded OCSP responder for %s (signing certificate %s)",
            settings.issuer_certificate,
            settings.signing_certificate,
        )
        return OcspResponder.from_settings(store, signer, signing_cert, issuer_cert, settings)

    async def get_version_count(
        self,
        ref: CertificateReference,
        *,
        cancel: CancellationToken | None = None,
    ) -> int:
        client = self._custody_factory(ref.vault_url)
        return await client.get_version_count(ref.name, cancel=cancel)

    async def create_root_certificate(  # noqa: PLR0913
        self,
        ref: CertificateReference,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        path_length: int | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> x509.Certificate | None:
        """Bootstrap a self-signed root CA under *ref*.

        Returns ``None`` without touching the custody service further
        when any version of *ref* already exists.
        """
        with bind_operation("create_root", ref.name):
            client = self._custody_factory(ref.vault_url)
            if await client.get_version_count(ref.name, cancel=cancel):
                log.warning("A certificate named %s already exists; not creating a new root", ref.name)
                return None

            state, _ = await self._pending_state(client, ref.name, cancel)
            if state in (OperationState.PENDING_UNKNOWN_ISSUER, OperationState.PENDING_OTHER_ISSUER):
                log.info("Cancelling pending operation before root bootstrap of %s", ref.name)
                await client.cancel_operation(ref.name, cancel=cancel)

            temp_version: str | None = None
            try:
                # Step 1: mint a fresh key behind a throwaway self-signed certificate
                check_cancelled(cancel)
                await client.start_operation(
                    ref.name,
                    self._policy(subject, ISSUER_SELF, key_size=self._settings.root_key_size),
                    cancel=cancel,
                )
                op = await client.wait_for_operation(ref.name, cancel=cancel)
                if op.status != OperationStatus.COMPLETED:
                    msg = f"Failed to create new key pair for {ref.name}: {op.error or op.status}"
                    raise RemoteServiceError(msg)

                temp = await client.get_certificate(ref.name, cancel=cancel)
                temp_version = temp.version
                log.debug(
                    "Temporary certificate version %s backed by key %s",
                    temp.version,
                    temp.key_locator,
                )

                # Step 2: a CSR for the same key
                op = await client.start_operation(
                    ref.name,
                    self._policy(
                        subject,
                        ISSUER_UNKNOWN,
                        key_size=self._settings.root_key_size,
                        reuse_key=True,
                    ),
                    cancel=cancel,
                )
                if op.csr is None:
                    msg = f"Custody service returned no CSR for {ref.name}"
                    raise RemoteServiceError(msg)

                # Step 3: the CSR must be signed by the key it carries
                csr = x509.load_der_x509_csr(op.csr)
                if not csr.is_signature_valid:
                    msg = f"CSR for {ref.name} failed its self-signature check"
                    raise ValidationError(msg)

                # Step 4: the real self-signed root
                public_key = csr.public_key()
                signer = RemoteSigner.for_public_key(
                    self._oracle_factory(temp.key_locator),
                    temp.key_locator,
                    public_key,
                )
                cert = await create_signed_ca_certificate(
                    subject,
                    not_before,
                    not_after,
                    self._settings.hash_algorithm,
                    public_key,
                    signer,
                    path_length,
                    cancel=cancel,
                )

                # Step 5: merge it back as the final certificate
                await client.merge_certificate(
                    ref.name,
                    _der(cert),
                    cancel=cancel,
                )
            except Exception:
                log.exception("Failed to create root certificate %s", ref.name)
                raise
            finally:
                if temp_version is not None:
                    # Runs even when the caller cancelled after the merge
                    await self._disable_quietly(client, ref.name, temp_version)

            log.info(
                "Created root certificate %s (path length %s)",
                ref.name,
                path_length,
            )
            return cert

    async def _disable_quietly(
        self,
        client: CustodyClient,
        name: str,
        version: str,
    ) -> None:
        """Disable the bootstrap certificate version; failures are only logged."""
        try:
            await client.disable_certificate(name, version)
            log.debug("Disabled temporary certificate %s version %s", name, version)
        except Exception:  # noqa: BLE001
            log.exception("Failed to disable temporary certificate %s version %s", name, version)

    async def sign_pending_request(  # noqa: PLR0913
        self,
        ref: CertificateReference,
        issuer_ref: CertificateReference,
        not_before: datetime,
        not_after: datetime,
        extensions: Iterable[x509.Extension] | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> x509.Certificate:
        """Sign the CSR pending on *ref* with the certificate at *issuer_ref*."""
        client = self._custody_factory(ref.vault_url)
        try:
            op = await client.get_operation(ref.name, cancel=cancel)
        except CustodyNotFoundError as exc:
            msg = f"No pending CSR on certificate {ref.name}"
            raise ArgumentError(msg) from exc
        if op.csr is None:
            msg = f"CSR not found for certificate {ref.name}"
            raise ArgumentError(msg)
        if not op.is_pending:
            msg = f"No pending CSR on certificate {ref.name}"
            raise ArgumentError(msg)
        log.debug("Pending CSR for %s: %s", ref.name, sanitize_for_logs(op.csr))

        issuer_client = self._custody_factory(issuer_ref.vault_url)
        bundle = await issuer_client.get_certificate(issuer_ref.name, cancel=cancel)
        issuer_cert = x509.load_der_x509_certificate(bundle.der)

        return await sign_request(
            op.csr,
            issuer_cert,
            self._signer_for(bundle.key_locator, issuer_cert),
            not_before,
            not_after,
            self._settings.hash_algorithm,
            extensions,
            cancel=cancel,
        )

    async def _issue(  # noqa: PLR0913
        self,
        issuer_ref: CertificateReference,
        ref: CertificateReference,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        sans: SubjectAlternativeNames | None,
        extensions: list[x509.Extension],
        cancel: CancellationToken | None,
    ) -> x509.Certificate:
        client = self._custody_factory(ref.vault_url)
        if await self._reconcile_pending(client, ref.name, cancel):
            await client.start_operation(
                ref.name,
                self._policy(subject, ISSUER_UNKNOWN, sans, reuse_key=False),
                cancel=cancel,
            )

        cert = await self.sign_pending_request(
            ref,
            issuer_ref,
            not_before,
            not_after,
            extensions,
            cancel=cancel,
        )
        await client.merge_certificate(ref.name, _der(cert), cancel=cancel)
        return cert

    async def issue_intermediate_certificate(  # noqa: PLR0913
        self,
        issuer_ref: CertificateReference,
        ref: CertificateReference,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        path_length: int | None = None,
        sans: SubjectAlternativeNames | None = None,
        revocation: RevocationConfig | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> x509.Certificate:
        """Issue a subordinate CA certificate under *issuer_ref*."""
        with bind_operation("issue_intermediate", ref.name):
            extensions = intermediate_extensions(path_length)
            if revocation is not None:
                extensions.extend(revocation.to_extensions())
            cert = await self._issue(
                issuer_ref, ref, subject, not_before, not_after, sans, extensions, cancel,
            )
            log.info(
                "Issued intermediate certificate %s under %s (path length %s)",
                ref.name,
                issuer_ref.name,
                path_length,
            )
            return cert

    async def issue_certificate(  # noqa: PLR0913
        self,
        issuer_ref: CertificateReference,
        ref: CertificateReference,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        sans: SubjectAlternativeNames | None = None,
        revocation: RevocationConfig | None = None,
        ocsp_signing: bool = False,  # noqa: FBT001, FBT002
        *,
        cancel: CancellationToken | None = None,
    ) -> x509.Certificate:
        """Issue an end-entity certificate (or OCSP responder certificate)."""
        with bind_operation("issue", ref.name):
            extensions = leaf_extensions(ocsp_signing=ocsp_signing)
            if revocation is not None:
                extensions.extend(revocation.to_extensions())
            cert = await self._issue(
                issuer_ref, ref, subject, not_before, not_after, sans, extensions, cancel,
            )
            log.info(
                "Issued %s certificate %s under %s",
                "OCSP signing" if ocsp_signing else "end-entity",
                ref.name,
                issuer_ref.name,
            )
            return cert

    async def renew_certificate(  # noqa: PLR0913
        self,
        issuer_ref: CertificateReference,
        ref: CertificateReference,
        not_before: datetime,
        not_after: datetime,
        revocation: RevocationConfig | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> x509.Certificate:
        """Re-issue *ref* with new validity bounds and a brand-new key.

        Subject, SANs and certificate class are taken from the current
        version.
        """
        client = self._custody_factory(ref.vault_url)
        current = x509.load_der_x509_certificate(
            (await client.get_certificate(ref.name, cancel=cancel)).der,
        )
        subject = current.subject.rfc4514_string()
        try:
            san = current.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            sans = SubjectAlternativeNames.from_extension(san)
        except x509.ExtensionNotFound:
            sans = None

        cert_class = certificate_class(current)
        log.info("Renewing %s certificate %s with a new key", cert_class, ref.name)
        if cert_class is CertificateClass.LEAF:
            return await self.issue_certificate(
                issuer_ref,
                ref,
                subject,
                not_before,
                not_after,
                sans,
                revocation,
                is_ocsp_signing(current),
                cancel=cancel,
            )
        if cert_class is CertificateClass.ROOT:
            msg = f"{ref.name} is a self-signed root; roots are not renewed in place"
            raise ArgumentError(msg)
        bc = current.extensions.get_extension_for_class(x509.BasicConstraints).value
        return await self.issue_intermediate_certificate(
            issuer_ref,
            ref,
            subject,
            not_before,
            not_after,
            bc.path_length,
            sans,
            revocation,
            cancel=cancel,
        )


def _der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.DER)


def certificate_class(cert: x509.Certificate) -> CertificateClass:
    """Classify *cert* as root, intermediate or leaf."""
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return CertificateClass.LEAF
    if not bc.ca:
        return CertificateClass.LEAF
    if cert.issuer == cert.subject:
        return CertificateClass.ROOT
    return CertificateClass.INTERMEDIATE


def is_ocsp_signing(cert: x509.Certificate) -> bool:
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return ExtendedKeyUsageOID.OCSP_SIGNING in eku
