"""Enumerated types shared by the revocation components.

:class:`RevocationReason` inherits from :class:`enum.IntEnum` per
RFC 5280 §5.3.1 integer codes.
"""

from __future__ import annotations

from enum import IntEnum


class RevocationReason(IntEnum):
    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5
    CERTIFICATE_HOLD = 6
    # 7 is unused
    REMOVE_FROM_CRL = 8
    PRIVILEGE_WITHDRAWN = 9
    AA_COMPROMISE = 10

    @classmethod
    def parse(cls, value: str | int) -> RevocationReason:
        """Parse a reason from its code or its name.

        Names are matched case-insensitively with or without
        underscores, so ``"KeyCompromise"``, ``"key_compromise"`` and
        ``"1"`` all give :attr:`KEY_COMPROMISE`.
        """
        if isinstance(value, int):
            return cls(value)
        text = value.strip()
        if text.isdigit():
            return cls(int(text))
        wanted = text.replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.name.replace("_", "").lower() == wanted:
                return member
        msg = f"Unknown revocation reason '{value}'; supported: {[m.name for m in cls]}"
        raise ValueError(msg)
