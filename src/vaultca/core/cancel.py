"""Cooperative cancellation for the async pipelines.

Each public coroutine accepts a keyword-only ``cancel`` argument holding
a :class:`CancellationToken` (or ``None``).  The token is checked before
every remote call and handed on to every collaborator, so cancelling it
stops a multi-step issuance at the next suspension point.
"""

from __future__ import annotations

import asyncio


class OperationCancelled(asyncio.CancelledError):
    """Raised when a :class:`CancellationToken` has been cancelled."""


class CancellationToken:
    """A one-shot cancellation flag shared between caller and callee."""

    __slots__ = ("_reason", "_cancelled")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Mark the token cancelled.  Later calls are no-ops."""
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason or "operation cancelled")


def check_cancelled(cancel: CancellationToken | None) -> None:
    """Raise :class:`OperationCancelled` if *cancel* is set."""
    if cancel is not None:
        cancel.raise_if_cancelled()
