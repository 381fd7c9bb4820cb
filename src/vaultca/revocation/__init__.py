"""Revocation services: OCSP responder, CRL generator and record storage.

Public API::

    from vaultca.revocation import CrlGenerator, OcspResponder

    responder = OcspResponder(store, signer, signing_cert, issuer_cert)
    response_der = await responder.build_response(request_der)
"""

from vaultca.revocation.crl import CRL_MEDIA_TYPE, CrlGenerator
from vaultca.revocation.models import RevocationRecord
from vaultca.revocation.ocsp import (
    OCSP_RESPONSE_MEDIA_TYPE,
    OcspRequestError,
    OcspResponder,
    check_post_body,
    decode_get_request,
)
from vaultca.revocation.store import (
    CachedRevocationStore,
    InMemoryRevocationStore,
    RevocationStore,
    build_revocation_store,
)

__all__ = [
    "CRL_MEDIA_TYPE",
    "OCSP_RESPONSE_MEDIA_TYPE",
    "CachedRevocationStore",
    "CrlGenerator",
    "InMemoryRevocationStore",
    "OcspRequestError",
    "OcspResponder",
    "RevocationRecord",
    "RevocationStore",
    "build_revocation_store",
    "check_post_body",
    "decode_get_request",
]
