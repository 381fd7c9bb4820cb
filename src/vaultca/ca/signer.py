"""Remote signing adapter -- signs through a network signing oracle.

The private key never leaves the custody service.  X.509 structures are
built with the ``cryptography`` library and signed remotely:

1. Build the structure (certificate or CRL) with a ``cryptography`` builder
2. Sign with a throwaway in-memory key of the same type to produce TBS bytes
3. Hash the TBS bytes locally and send the digest to the oracle
4. Convert ECDSA ``r || s`` output to DER when needed
5. Assemble the final DER ``SEQUENCE { tbs, algorithm, signature }``
"""

from __future__ import annotations

import abc
import asyncio
import functools
import hashlib
import logging
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dh, ec, rsa

from vaultca.ca import oids
from vaultca.ca.base import ArgumentError, NotSupportedError, RemoteServiceError
from vaultca.core.cancel import check_cancelled

if TYPE_CHECKING:
    from cryptography import x509
    from cryptography.hazmat.primitives.asymmetric.types import (
        CertificatePublicKeyTypes,
        PrivateKeyTypes,
    )

    from vaultca.core.cancel import CancellationToken

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# ASN.1 DER constants
# ---------------------------------------------------------------------------
# Threshold at which DER length encoding switches to long form.
_DER_LONG_FORM_THRESHOLD = 0x80
# High-bit mask for DER integer sign detection.
_DER_SIGN_BIT_MASK = 0x80

# ---------------------------------------------------------------------------
# Signature algorithm DER encodings (AlgorithmIdentifier SEQUENCE)
# ---------------------------------------------------------------------------
# These are pre-encoded ASN.1 SEQUENCE { OID, parameters } values and
# match what ``cryptography`` writes into the TBS structure.

_SIG_ALGORITHM_DER = {
    # RSA PKCS#1 v1.5
    ("rsa", "sha256"): (
        b"\x30\x0d\x06\x09\x2a\x86\x48\x86\xf7\x0d\x01\x01\x0b\x05\x00"
    ),  # sha256WithRSAEncryption
    ("rsa", "sha384"): (
        b"\x30\x0d\x06\x09\x2a\x86\x48\x86\xf7\x0d\x01\x01\x0c\x05\x00"
    ),  # sha384WithRSAEncryption
    ("rsa", "sha512"): (
        b"\x30\x0d\x06\x09\x2a\x86\x48\x86\xf7\x0d\x01\x01\x0d\x05\x00"
    ),  # sha512WithRSAEncryption
    # ECDSA
    ("ec", "sha256"): (b"\x30\x0a\x06\x08\x2a\x86\x48\xce\x3d\x04\x03\x02"),  # ecdsa-with-SHA256
    ("ec", "sha384"): (b"\x30\x0a\x06\x08\x2a\x86\x48\xce\x3d\x04\x03\x03"),  # ecdsa-with-SHA384
    ("ec", "sha512"): (b"\x30\x0a\x06\x08\x2a\x86\x48\xce\x3d\x04\x03\x04"),  # ecdsa-with-SHA512
}

# JWA identifiers understood by the signing oracle
_ORACLE_ALGORITHMS = {
    ("rsa", "sha256"): "RS256",
    ("rsa", "sha384"): "RS384",
    ("rsa", "sha512"): "RS512",
    ("ec", "sha256"): "ES256",
    ("ec", "sha384"): "ES384",
    ("ec", "sha512"): "ES512",
}

_HASH_ALGORITHMS = {
    "sha256": hashes.SHA256(),
    "sha384": hashes.SHA384(),
    "sha512": hashes.SHA512(),
}


# ---------------------------------------------------------------------------
# DER assembly helpers
# ---------------------------------------------------------------------------


def _encode_der_length(length: int) -> bytes:
    """Encode an ASN.1 DER length field."""
    if length < _DER_LONG_FORM_THRESHOLD:
        return bytes([length])
    length_bytes = length.to_bytes(
        (length.bit_length() + 7) // 8,
        "big",
    )
    return bytes([_DER_LONG_FORM_THRESHOLD | len(length_bytes)]) + length_bytes


def _int_to_der_integer(value: int) -> bytes:
    """Encode a non-negative integer as ASN.1 DER INTEGER (tag 0x02)."""
    if value == 0:
        content = b"\x00"
    else:
        byte_len = (value.bit_length() + 7) // 8
        content = value.to_bytes(byte_len, "big")
        # Ensure positive encoding -- prepend 0x00 if high bit set
        if content[0] & _DER_SIGN_BIT_MASK:
            content = b"\x00" + content
    return b"\x02" + _encode_der_length(len(content)) + content


def _ecdsa_raw_to_der(raw_sig: bytes) -> bytes:
    """Convert an ECDSA raw ``(r || s)`` signature to DER format.

    Signing oracles return a flat concatenation of ``r`` and ``s`` as
    fixed-width unsigned big-endian integers.  X.509 expects
    DER-encoded ``SEQUENCE { INTEGER r, INTEGER s }``.
    """
    if not raw_sig or len(raw_sig) % 2 != 0:
        msg = f"ECDSA raw signature has odd length ({len(raw_sig)}); expected even (r||s)"
        raise RemoteServiceError(msg)
    half = len(raw_sig) // 2
    r_der = _int_to_der_integer(int.from_bytes(raw_sig[:half], "big"))
    s_der = _int_to_der_integer(int.from_bytes(raw_sig[half:], "big"))

    inner = r_der + s_der
    return b"\x30" + _encode_der_length(len(inner)) + inner


def assemble_signed_der(
    tbs_der: bytes,
    sig_algorithm_der: bytes,
    signature: bytes,
) -> bytes:
    """Assemble a signed X.509 structure from its components.

    Works for certificates and CRLs alike.  Returns DER encoding of::

        SEQUENCE {
            TBS structure       (already DER-encoded),
            AlgorithmIdentifier (already DER-encoded),
            BIT STRING          (signature)
        }
    """
    # BIT STRING: tag 0x03, length, 0x00 (no unused bits), sig bytes
    bit_string_content = b"\x00" + signature
    bit_string = b"\x03" + _encode_der_length(len(bit_string_content)) + bit_string_content

    inner = tbs_der + sig_algorithm_der + bit_string
    return b"\x30" + _encode_der_length(len(inner)) + inner


# ---------------------------------------------------------------------------
# Algorithm selection
# ---------------------------------------------------------------------------


def hash_algorithm_name(hash_algorithm: str | hashes.HashAlgorithm) -> str:
    """Normalise *hash_algorithm* to one of ``sha256``/``sha384``/``sha512``."""
    name = hash_algorithm.name if isinstance(hash_algorithm, hashes.HashAlgorithm) else hash_algorithm
    name = name.lower().replace("-", "")
    if name not in _HASH_ALGORITHMS:
        msg = f"Unsupported hash algorithm '{name}'; supported: {sorted(_HASH_ALGORITHMS)}"
        raise NotSupportedError(msg)
    return name


def resolve_hash_algorithm(hash_algorithm: str | hashes.HashAlgorithm) -> hashes.HashAlgorithm:
    return _HASH_ALGORITHMS[hash_algorithm_name(hash_algorithm)]


def key_type_for_oid(algorithm_oid: str) -> str:
    """Map a key or signature algorithm OID to ``"rsa"`` or ``"ec"``."""
    if algorithm_oid in oids.DH_ALGORITHMS:
        msg = "Diffie-Hellman keys cannot produce signatures"
        raise NotSupportedError(msg)
    if algorithm_oid in oids.RSA_ALGORITHMS:
        return "rsa"
    if algorithm_oid in oids.EC_ALGORITHMS:
        return "ec"
    msg = f"Unsupported key algorithm {oids.describe(algorithm_oid)}"
    raise NotSupportedError(msg)


def public_key_algorithm_oid(public_key: CertificatePublicKeyTypes | dh.DHPublicKey) -> str:
    """SubjectPublicKeyInfo algorithm OID for a ``cryptography`` public key."""
    if isinstance(public_key, rsa.RSAPublicKey):
        return oids.RSA_ENCRYPTION
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return oids.EC_PUBLIC_KEY
    if isinstance(public_key, dh.DHPublicKey):
        return oids.DH_PUBLIC_NUMBER
    msg = f"Unsupported public key type {type(public_key).__name__}"
    raise NotSupportedError(msg)


@functools.cache
def make_placeholder_key(key_type: str) -> PrivateKeyTypes:
    """Throwaway key matching the remote key type, generated once per type.

    Only its algorithm matters: ``cryptography`` writes the matching
    AlgorithmIdentifier into the TBS structure, then the signature made
    with this key is discarded.
    """
    if key_type == "rsa":
        return rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )
    return ec.generate_private_key(ec.SECP256R1())


# ---------------------------------------------------------------------------
# Oracle contract and adapter
# ---------------------------------------------------------------------------


class SigningOracle(abc.ABC):
    """Remote service that signs digests with a key it holds.

    Implementations wrap the custody service's network client.  RSA
    signatures are PKCS#1 v1.5; ECDSA signatures are returned as
    fixed-width ``r || s``.  Failures should be raised as
    :class:`~vaultca.ca.base.RemoteServiceError`.
    """

    @abc.abstractmethod
    async def sign(
        self,
        key_locator: str,
        digest: bytes,
        algorithm: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Sign *digest* with the key at *key_locator* using JWA *algorithm*."""


class RemoteSigner:
    """Adapts a :class:`SigningOracle` to "sign this data with this hash".

    The key type (RSA or ECDSA) is fixed at construction from the key's
    algorithm OID.  The async methods are the supported surface;
    :meth:`sign_digest_blocking` only exists for legacy synchronous
    callers and refuses to run inside an event loop.
    """

    def __init__(
        self,
        oracle: SigningOracle,
        key_locator: str,
        key_algorithm_oid: str,
    ) -> None:
        if not key_locator:
            msg = "A key locator is required for remote signing"
            raise ArgumentError(msg)
        self._oracle = oracle
        self._key_locator = key_locator
        self._key_type = key_type_for_oid(key_algorithm_oid)

    @classmethod
    def for_public_key(
        cls,
        oracle: SigningOracle,
        key_locator: str,
        public_key: CertificatePublicKeyTypes,
    ) -> RemoteSigner:
        return cls(oracle, key_locator, public_key_algorithm_oid(public_key))

    @classmethod
    def for_certificate(
        cls,
        oracle: SigningOracle,
        key_locator: str,
        certificate: x509.Certificate,
    ) -> RemoteSigner:
        """Signer for the key certified by *certificate*."""
        return cls.for_public_key(oracle, key_locator, certificate.public_key())

    @property
    def key_type(self) -> str:
        return self._key_type

    @property
    def key_locator(self) -> str:
        return self._key_locator

    def signature_algorithm_der(self, hash_algorithm: str | hashes.HashAlgorithm) -> bytes:
        return _SIG_ALGORITHM_DER[(self._key_type, hash_algorithm_name(hash_algorithm))]

    def placeholder_key(self) -> PrivateKeyTypes:
        return make_placeholder_key(self._key_type)

    async def sign_digest(
        self,
        digest: bytes,
        hash_algorithm: str | hashes.HashAlgorithm,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Sign a precomputed *digest*; returns a DER-ready signature value."""
        name = hash_algorithm_name(hash_algorithm)
        expected = _HASH_ALGORITHMS[name].digest_size
        if len(digest) != expected:
            msg = f"{name} digest must be {expected} bytes, got {len(digest)}"
            raise ArgumentError(msg)

        check_cancelled(cancel)
        algorithm = _ORACLE_ALGORITHMS[(self._key_type, name)]
        log.debug(
            "Requesting remote signature: key=%s, algorithm=%s",
            self._key_locator,
            algorithm,
        )
        signature = await self._oracle.sign(
            self._key_locator,
            digest,
            algorithm,
            cancel=cancel,
        )
        if self._key_type == "ec":
            return _ecdsa_raw_to_der(signature)
        return signature

    async def sign_data(
        self,
        data: bytes,
        hash_algorithm: str | hashes.HashAlgorithm,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Hash *data* locally and sign the digest remotely."""
        name = hash_algorithm_name(hash_algorithm)
        digest = hashlib.new(name, data).digest()
        return await self.sign_digest(digest, name, cancel=cancel)

    async def sign_structure(
        self,
        tbs_der: bytes,
        hash_algorithm: str | hashes.HashAlgorithm,
        *,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Sign a TBS structure and return the assembled signed DER."""
        signature = await self.sign_data(tbs_der, hash_algorithm, cancel=cancel)
        return assemble_signed_der(
            tbs_der,
            self.signature_algorithm_der(hash_algorithm),
            signature,
        )

    def sign_digest_blocking(
        self,
        digest: bytes,
        hash_algorithm: str | hashes.HashAlgorithm,
    ) -> bytes:
        """Synchronous :meth:`sign_digest` for legacy callers.

        Blocks the calling thread until the oracle answers, so it must
        never be used from async code.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.sign_digest(digest, hash_algorithm))
        msg = "sign_digest_blocking() cannot be used inside a running event loop; await sign_digest()"
        raise RuntimeError(msg)

    def __repr__(self) -> str:
        return f"RemoteSigner(key={self._key_locator!r}, type={self._key_type})"
