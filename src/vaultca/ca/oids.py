"""Object identifiers used across the toolkit.

The tables are immutable (:class:`types.MappingProxyType`) and built
once at import time.
"""

from __future__ import annotations

from types import MappingProxyType

# ---------------------------------------------------------------------------
# Certificate extensions
# ---------------------------------------------------------------------------
BASIC_CONSTRAINTS = "2.5.29.19"
KEY_USAGE = "2.5.29.15"
EXTENDED_KEY_USAGE = "2.5.29.37"
SUBJECT_KEY_IDENTIFIER = "2.5.29.14"
AUTHORITY_KEY_IDENTIFIER = "2.5.29.35"
SUBJECT_ALT_NAME = "2.5.29.17"
AUTHORITY_INFORMATION_ACCESS = "1.3.6.1.5.5.7.1.1"
CRL_DISTRIBUTION_POINTS = "2.5.29.31"
CRL_NUMBER = "2.5.29.20"

# ---------------------------------------------------------------------------
# OCSP
# ---------------------------------------------------------------------------
OCSP_NONCE = "1.3.6.1.5.5.7.48.1.2"
OCSP_NOCHECK = "1.3.6.1.5.5.7.48.1.5"

# ---------------------------------------------------------------------------
# Extended key usages
# ---------------------------------------------------------------------------
EKU_SERVER_AUTH = "1.3.6.1.5.5.7.3.1"
EKU_CLIENT_AUTH = "1.3.6.1.5.5.7.3.2"
EKU_OCSP_SIGNING = "1.3.6.1.5.5.7.3.9"

# Microsoft User Principal Name (otherName in SubjectAltName)
UPN = "1.3.6.1.4.1.311.20.2.3"

# ---------------------------------------------------------------------------
# Key and signature algorithms
# ---------------------------------------------------------------------------
RSA_ENCRYPTION = "1.2.840.113549.1.1.1"
SHA256_WITH_RSA = "1.2.840.113549.1.1.11"
SHA384_WITH_RSA = "1.2.840.113549.1.1.12"
SHA512_WITH_RSA = "1.2.840.113549.1.1.13"

EC_PUBLIC_KEY = "1.2.840.10045.2.1"
ECDSA_WITH_SHA256 = "1.2.840.10045.4.3.2"
ECDSA_WITH_SHA384 = "1.2.840.10045.4.3.3"
ECDSA_WITH_SHA512 = "1.2.840.10045.4.3.4"

# dhpublicnumber (X9.42) and PKCS#3 dhKeyAgreement
DH_PUBLIC_NUMBER = "1.2.840.10046.2.1"
DH_KEY_AGREEMENT = "1.2.840.113549.1.3.1"

RSA_ALGORITHMS = frozenset(
    {RSA_ENCRYPTION, SHA256_WITH_RSA, SHA384_WITH_RSA, SHA512_WITH_RSA},
)
EC_ALGORITHMS = frozenset(
    {EC_PUBLIC_KEY, ECDSA_WITH_SHA256, ECDSA_WITH_SHA384, ECDSA_WITH_SHA512},
)
DH_ALGORITHMS = frozenset({DH_PUBLIC_NUMBER, DH_KEY_AGREEMENT})

WELL_KNOWN_OIDS = MappingProxyType(
    {
        BASIC_CONSTRAINTS: "basicConstraints",
        KEY_USAGE: "keyUsage",
        EXTENDED_KEY_USAGE: "extKeyUsage",
        SUBJECT_KEY_IDENTIFIER: "subjectKeyIdentifier",
        AUTHORITY_KEY_IDENTIFIER: "authorityKeyIdentifier",
        SUBJECT_ALT_NAME: "subjectAltName",
        AUTHORITY_INFORMATION_ACCESS: "authorityInfoAccess",
        CRL_DISTRIBUTION_POINTS: "cRLDistributionPoints",
        CRL_NUMBER: "cRLNumber",
        OCSP_NONCE: "id-pkix-ocsp-nonce",
        OCSP_NOCHECK: "id-pkix-ocsp-nocheck",
        EKU_SERVER_AUTH: "serverAuth",
        EKU_CLIENT_AUTH: "clientAuth",
        EKU_OCSP_SIGNING: "OCSPSigning",
    },
)


def describe(oid: str) -> str:
    """Return a friendly name for *oid*, or the dotted form itself."""
    return WELL_KNOWN_OIDS.get(oid, oid)
