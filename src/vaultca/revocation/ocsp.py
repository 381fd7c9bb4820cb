"""OCSP responder (RFC 6960).

Parses DER OCSP requests, checks that the queried certificate was issued
by the configured CA, looks up its revocation status and builds a signed
``BasicOCSPResponse``.  The response signature is produced remotely via
:class:`~vaultca.ca.signer.RemoteSigner`; the ASN.1 structures are built
with ``asn1crypto`` because the signature has to be attached by hand.

The responder keeps no state between calls: every response carries fresh
timestamps and a fresh signature.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import unquote

from asn1crypto import algos, core, ocsp
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from vaultca.ca import oids
from vaultca.ca.base import CAError, ValidationError
from vaultca.ca.cert_utils import serial_to_hex
from vaultca.core.cancel import check_cancelled

if TYPE_CHECKING:
    from vaultca.ca.signer import RemoteSigner
    from vaultca.config.settings import OcspSettings
    from vaultca.core.cancel import CancellationToken
    from vaultca.revocation.store import RevocationStore

log = logging.getLogger(__name__)

OCSP_REQUEST_MEDIA_TYPE = "application/ocsp-request"
OCSP_RESPONSE_MEDIA_TYPE = "application/ocsp-response"

# RFC 6960 Appendix A.1: GET requests are for requests under 255 bytes,
# which is at most 1365 characters once base64 and URL encoded.
MAX_GET_LENGTH = 1365
MAX_POST_BYTES = 64 * 1024

_CERT_ID_HASHES = frozenset({"sha1", "sha256", "sha384", "sha512"})
_RESPONSE_HASH = "sha256"

# DER NULL, the value of id-pkix-ocsp-nocheck
_DER_NULL = b"\x05\x00"

# OCSPResponseStatus values used for error responses
MALFORMED_REQUEST = "malformed_request"
INTERNAL_ERROR = "internal_error"
UNAUTHORIZED = "unauthorized"


class OcspRequestError(ValidationError):
    """An OCSP request was rejected before parsing (size or encoding)."""


class OcspProtocolError(CAError):
    """A request the responder answers with an unsuccessful status."""

    def __init__(self, status: str, detail: str) -> None:
        super().__init__(detail)
        self.status = status


# ---------------------------------------------------------------------------
# Transport helpers
# ---------------------------------------------------------------------------


def decode_get_request(encoded: str, max_length: int = MAX_GET_LENGTH) -> bytes:
    """Decode the path component of an OCSP GET request to DER bytes.

    Accepts URL-encoded standard base64 as well as URL-safe base64, with
    or without padding.
    """
    if len(encoded) > max_length:
        msg = f"OCSP GET request is {len(encoded)} characters; limit is {max_length}"
        raise OcspRequestError(msg)

    text = unquote(encoded).strip()
    if not text:
        msg = "OCSP GET request is empty"
        raise OcspRequestError(msg)

    text += "=" * (-len(text) % 4)
    try:
        if "-" in text or "_" in text:
            return base64.urlsafe_b64decode(text)
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        msg = f"OCSP GET request is not valid base64: {exc}"
        raise OcspRequestError(msg) from exc


def check_post_body(body: bytes, max_size: int = MAX_POST_BYTES) -> bytes:
    """Validate the size of an OCSP POST body and return it."""
    if not body:
        msg = "OCSP POST body is empty"
        raise OcspRequestError(msg)
    if len(body) > max_size:
        msg = f"OCSP POST body is {len(body)} bytes; limit is {max_size}"
        raise OcspRequestError(msg)
    return body


def error_response(status: str) -> bytes:
    """DER ``OCSPResponse`` carrying only an unsuccessful *status*."""
    return ocsp.OCSPResponse({"response_status": status}).dump()


# ---------------------------------------------------------------------------
# Responder
# ---------------------------------------------------------------------------


class OcspResponder:
    """Answers OCSP requests for certificates issued by one CA.

    Parameters
    ----------
    store:
        Revocation records for the CA.
    signer:
        Remote signer holding the OCSP signing certificate's key.
    signing_cert:
        Certificate whose key signs responses.  May be the issuer itself
        or a delegated responder certificate carrying the OCSPSigning EKU.
    issuer_cert:
        The CA whose certificates this responder answers for.
    response_validity:
        Gap between ``thisUpdate`` and ``nextUpdate``.
    max_post_bytes, max_get_length:
        Transport limits applied by :meth:`handle_post` and :meth:`handle_get`.

    """

    def __init__(
        self,
        store: RevocationStore,
        signer: RemoteSigner,
        signing_cert: x509.Certificate,
        issuer_cert: x509.Certificate,
        response_validity: timedelta = timedelta(hours=24),
        *,
        max_post_bytes: int = MAX_POST_BYTES,
        max_get_length: int = MAX_GET_LENGTH,
    ) -> None:
        self._store = store
        self._signer = signer
        self._response_validity = response_validity
        self.max_post_bytes = max_post_bytes
        self.max_get_length = max_get_length

        issuer = asn1_x509.Certificate.load(issuer_cert.public_bytes(Encoding.DER))
        self._issuer_name_der = issuer.subject.dump()
        self._issuer_key_bits = bytes(issuer.public_key["public_key"])

        signing = asn1_x509.Certificate.load(signing_cert.public_bytes(Encoding.DER))
        self._responder_id = _responder_id(signing_cert, signing)

        self._chain = [signing]
        if signing_cert != issuer_cert:
            self._chain.append(issuer)

    @classmethod
    def from_settings(
        cls,
        store: RevocationStore,
        signer: RemoteSigner,
        signing_cert: x509.Certificate,
        issuer_cert: x509.Certificate,
        settings: OcspSettings,
    ) -> OcspResponder:
        return cls(
            store,
            signer,
            signing_cert,
            issuer_cert,
            response_validity=settings.response_validity,
            max_post_bytes=settings.max_post_bytes,
            max_get_length=settings.max_get_length,
        )

    async def handle_get(
        self,
        encoded: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Answer an OCSP GET request given the base64 path component."""
        try:
            request_der = decode_get_request(encoded, self.max_get_length)
        except OcspRequestError as exc:
            log.warning("Rejected OCSP GET request: %s", exc.detail)
            return error_response(MALFORMED_REQUEST)
        return await self.build_response(request_der, cancel=cancel)

    async def handle_post(
        self,
        body: bytes,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Answer an OCSP POST request given the raw request body."""
        try:
            request_der = check_post_body(body, self.max_post_bytes)
        except OcspRequestError as exc:
            log.warning("Rejected OCSP POST request: %s", exc.detail)
            return error_response(MALFORMED_REQUEST)
        return await self.build_response(request_der, cancel=cancel)

    async def build_response(
        self,
        request_der: bytes,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Process an OCSP request and return a DER-encoded response.

        Never raises for bad input: malformed requests, requests for
        another issuer and internal failures all produce an unsigned
        error response.  Cancellation still propagates.

        Parameters
        ----------
        request_der:
            DER-encoded ``OCSPRequest``.
        cancel:
            Optional cancellation token.

        Returns
        -------
        bytes
            DER-encoded ``OCSPResponse``.

        """
        try:
            cert_id, nonce = _parse_request(request_der)
            self._check_issuer(cert_id)
            return await self._build_successful(cert_id, nonce, cancel)
        except OcspProtocolError as exc:
            log.warning("Rejected OCSP request (%s): %s", exc.status, exc.detail)
            return error_response(exc.status)
        except Exception:
            log.exception("Failed to build OCSP response")
            return error_response(INTERNAL_ERROR)

    # -- request checks ----------------------------------------------------

    def _check_issuer(self, cert_id: ocsp.CertId) -> None:
        algorithm = cert_id["hash_algorithm"]["algorithm"].native
        expected_name = hashlib.new(algorithm, self._issuer_name_der).digest()
        expected_key = hashlib.new(algorithm, self._issuer_key_bits).digest()

        name_ok = hmac.compare_digest(expected_name, cert_id["issuer_name_hash"].native)
        key_ok = hmac.compare_digest(expected_key, cert_id["issuer_key_hash"].native)
        if not (name_ok and key_ok):
            msg = "CertID issuer hashes do not match the configured issuer"
            raise OcspProtocolError(UNAUTHORIZED, msg)

    # -- response assembly -------------------------------------------------

    async def _build_successful(
        self,
        cert_id: ocsp.CertId,
        nonce: bytes | None,
        cancel: CancellationToken | None,
    ) -> bytes:
        serial = serial_to_hex(cert_id["serial_number"].native)
        check_cancelled(cancel)
        record = await self._store.get_revocation(serial, cancel=cancel)

        if record is None:
            status = ocsp.CertStatus(name="good", value=core.Null())
        else:
            status = ocsp.CertStatus(
                name="revoked",
                value={
                    "revocation_time": record.revocation_date.replace(microsecond=0),
                    "revocation_reason": int(record.reason),
                },
            )

        now = datetime.now(UTC).replace(microsecond=0)
        single = {
            "cert_id": ocsp.CertId.load(cert_id.dump()),
            "cert_status": status,
            "this_update": now,
            "next_update": now + self._response_validity,
        }
        if nonce is not None:
            single["single_extensions"] = [
                {
                    "extn_id": oids.OCSP_NONCE,
                    "critical": False,
                    "extn_value": core.ParsableOctetString(nonce),
                },
            ]

        response_data = ocsp.ResponseData(
            {
                "responder_id": self._responder_id,
                "produced_at": now,
                "responses": [ocsp.SingleResponse(single)],
                "response_extensions": [
                    {
                        "extn_id": oids.OCSP_NOCHECK,
                        "critical": False,
                        "extn_value": core.ParsableOctetString(_DER_NULL),
                    },
                ],
            },
        )

        tbs = response_data.dump()
        signature = await self._signer.sign_data(tbs, _RESPONSE_HASH, cancel=cancel)
        basic = ocsp.BasicOCSPResponse(
            {
                "tbs_response_data": response_data,
                "signature_algorithm": algos.SignedDigestAlgorithm.load(
                    self._signer.signature_algorithm_der(_RESPONSE_HASH),
                ),
                "signature": signature,
                "certs": self._chain,
            },
        )

        log.debug(
            "OCSP response built: serial=%s, status=%s, nonce=%s",
            serial,
            "good" if record is None else "revoked",
            nonce is not None,
        )
        return ocsp.OCSPResponse(
            {
                "response_status": "successful",
                "response_bytes": {
                    "response_type": "basic_ocsp_response",
                    "response": basic,
                },
            },
        ).dump()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _responder_id(cert: x509.Certificate, parsed: asn1_x509.Certificate) -> ocsp.ResponderId:
    """ResponderID by key hash when the certificate has an SKI, else by name."""
    try:
        ski = cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    except x509.ExtensionNotFound:
        name = asn1_x509.Name.load(parsed.subject.dump())
        return ocsp.ResponderId(name="by_name", value=name)
    return ocsp.ResponderId(name="by_key", value=ski.value.digest)


def _find_nonce(extensions: core.Asn1Value) -> bytes | None:
    if not isinstance(extensions, core.SequenceOf):
        return None
    for ext in extensions:
        if ext["extn_id"].dotted == oids.OCSP_NONCE:
            return ext["extn_value"].contents
    return None


def _parse_request(request_der: bytes) -> tuple[ocsp.CertId, bytes | None]:
    """Extract the single CertID and the nonce, if any.

    Raises
    ------
    OcspProtocolError
        With ``malformed_request`` for undecodable requests, request
        lists that do not hold exactly one entry and unsupported CertID
        hash algorithms.

    """
    try:
        request = ocsp.OCSPRequest.load(request_der, strict=True)
        tbs_request = request["tbs_request"]
        request_list = tbs_request["request_list"]
        count = len(request_list)
        if count != 1:
            msg = f"Expected exactly one request, got {count}"
            raise OcspProtocolError(MALFORMED_REQUEST, msg)

        single = request_list[0]
        cert_id = single["req_cert"]
        algorithm = cert_id["hash_algorithm"]["algorithm"].native
        # Force decoding of the remaining CertID fields
        cert_id["issuer_name_hash"].native  # noqa: B018
        cert_id["issuer_key_hash"].native  # noqa: B018
        cert_id["serial_number"].native  # noqa: B018

        nonce = _find_nonce(tbs_request["request_extensions"])
        if nonce is None:
            nonce = _find_nonce(single["single_request_extensions"])
    except OcspProtocolError:
        raise
    except (ValueError, TypeError, KeyError) as exc:
        msg = f"Failed to parse OCSP request: {exc}"
        raise OcspProtocolError(MALFORMED_REQUEST, msg) from exc

    if algorithm not in _CERT_ID_HASHES:
        msg = f"Unsupported CertID hash algorithm '{algorithm}'"
        raise OcspProtocolError(MALFORMED_REQUEST, msg)
    return cert_id, nonce
