"""Sensitive data sanitization for log output.

Provides :func:`sanitize_for_logs` which redacts encoded certificate
material (PEM bodies, long base64 DER blobs, raw bytes) from data
structures before they are written to logs.  Only the kind of object
and its size are preserved.
"""

from __future__ import annotations

import re
from typing import Any

# Regex matching the base64 body inside PEM blocks
_PEM_BODY_RE = re.compile(
    r"(-----BEGIN [A-Z0-9 ]+-----)"
    r"([\s\S]*?)"
    r"(-----END [A-Z0-9 ]+-----)",
)

# Bare base64 runs long enough to be a CSR or certificate
_BASE64_BLOB_RE = re.compile(r"[A-Za-z0-9+/_\-]{120,}={0,2}")


def sanitize_pem(pem: str) -> str:
    """Replace the base64 body of PEM blocks with ``[REDACTED]``.

    Preserves BEGIN/END markers so the type of object is still visible.
    """

    def _redact(m: re.Match[str]) -> str:
        return f"{m.group(1)}\n[REDACTED]\n{m.group(3)}"

    return _PEM_BODY_RE.sub(_redact, pem)


def sanitize_base64(text: str) -> str:
    """Replace long base64 runs with a length marker."""
    return _BASE64_BLOB_RE.sub(lambda m: f"[REDACTED {len(m.group(0))} chars]", text)


def sanitize_for_logs(data: Any) -> Any:  # noqa: ANN401
    """Recursively sanitize sensitive material in *data*.

    Handles dicts, lists, tuples, bytes and plain strings.
    Non-sensitive data passes through unchanged.
    """
    if isinstance(data, dict):
        return {k: sanitize_for_logs(v) for k, v in data.items()}

    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_logs(item) for item in data)

    if isinstance(data, (bytes, bytearray)):
        return f"[REDACTED {len(data)} bytes]"

    if isinstance(data, str):
        if "-----BEGIN " in data:
            return sanitize_pem(data)
        return sanitize_base64(data)

    return data
