"""Revocation record storage.

:class:`RevocationStore` is the contract the OCSP responder and CRL
generator read through.  Persistent backends (table storage, vault
tags, a database) implement it outside this package;
:class:`InMemoryRevocationStore` is the reference implementation and
:class:`CachedRevocationStore` a lookup cache that wraps any backend.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from vaultca.ca.cert_utils import normalize_serial
from vaultca.core.cancel import check_cancelled

if TYPE_CHECKING:
    from vaultca.config.settings import RevocationCacheSettings
    from vaultca.core.cancel import CancellationToken
    from vaultca.revocation.models import RevocationRecord

log = logging.getLogger(__name__)


class RevocationStore(abc.ABC):
    """Async access to revocation records."""

    @abc.abstractmethod
    async def add_revocation(
        self,
        record: RevocationRecord,
        *,
        cancel: CancellationToken | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def get_revocation(
        self,
        serial_number: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> RevocationRecord | None:
        """Return the record for *serial_number* (any hex form), or None."""

    @abc.abstractmethod
    async def get_revocations_by_issuer(
        self,
        issuer_distinguished_name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[RevocationRecord]: ...


class InMemoryRevocationStore(RevocationStore):
    """Dict-backed store; adding an existing serial replaces its record."""

    def __init__(self) -> None:
        self._records: dict[str, RevocationRecord] = {}

    async def add_revocation(
        self,
        record: RevocationRecord,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        check_cancelled(cancel)
        self._records[record.serial_number] = record
        log.info(
            "Recorded revocation: serial=%s, reason=%s, issuer=%s",
            record.serial_number,
            record.reason.name,
            record.issuer_distinguished_name,
        )

    async def get_revocation(
        self,
        serial_number: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> RevocationRecord | None:
        check_cancelled(cancel)
        return self._records.get(normalize_serial(serial_number))

    async def get_revocations_by_issuer(
        self,
        issuer_distinguished_name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[RevocationRecord]:
        check_cancelled(cancel)
        return [
            r for r in self._records.values()
            if r.issuer_distinguished_name == issuer_distinguished_name
        ]


@dataclass(frozen=True)
class _CacheEntry:
    record: RevocationRecord | None
    expires_at: float


class CachedRevocationStore(RevocationStore):
    """Caches single-serial lookups in front of another store.

    Negative results are cached too, since most OCSP queries are for
    unrevoked certificates.  Concurrent misses for the same serial share
    one backend call.  Adding a revocation through this wrapper drops the
    cached entry for that serial, and a lookup that was already in flight
    when the revocation landed does not repopulate the cache.
    Revocations added directly to the backend become visible once the
    entry expires.

    Entries are kept in insertion order, which is also expiry order.
    Expired entries are dropped whenever a new one is stored, and the
    oldest entries go first once *max_entries* is reached.

    Parameters
    ----------
    inner:
        The backing store.
    ttl:
        How long a lookup result is served from cache.
    clock:
        Monotonic time source, in seconds.
    max_entries:
        Upper bound on the number of cached serials.

    """

    def __init__(
        self,
        inner: RevocationStore,
        ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10000,
    ) -> None:
        if max_entries < 1:
            msg = f"max_entries must be positive (got {max_entries})"
            raise ValueError(msg)
        self._inner = inner
        self._ttl = ttl.total_seconds()
        self._clock = clock
        self._max_entries = max_entries
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        # Bumped by add_revocation; a lookup only caches its result if
        # the generation it started with is still current.
        self._generations: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, key: str) -> _CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            return entry
        return None

    def _store(self, key: str, record: RevocationRecord | None) -> None:
        now = self._clock()
        while self._entries:
            oldest = next(iter(self._entries.values()))
            if oldest.expires_at > now:
                break
            self._entries.popitem(last=False)
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = _CacheEntry(record, now + self._ttl)

    async def add_revocation(
        self,
        record: RevocationRecord,
        *,
        cancel: CancellationToken | None = None,
    ) -> None:
        key = record.serial_number
        try:
            await self._inner.add_revocation(record, cancel=cancel)
        finally:
            self._entries.pop(key, None)
            if key in self._locks:
                self._generations[key] = self._generations.get(key, 0) + 1
            else:
                self._generations.pop(key, None)

    async def get_revocation(
        self,
        serial_number: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> RevocationRecord | None:
        key = normalize_serial(serial_number)
        entry = self._fresh(key)
        if entry is not None:
            return entry.record

        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                # Another task may have filled the entry while we waited
                entry = self._fresh(key)
                if entry is not None:
                    return entry.record
                generation = self._generations.get(key, 0)
                record = await self._inner.get_revocation(key, cancel=cancel)
                if self._generations.get(key, 0) == generation:
                    self._store(key, record)
                else:
                    log.debug("Revocation of %s landed during lookup; not caching", key)
                return record
        finally:
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]
                self._generations.pop(key, None)

    async def get_revocations_by_issuer(
        self,
        issuer_distinguished_name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[RevocationRecord]:
        return await self._inner.get_revocations_by_issuer(
            issuer_distinguished_name,
            cancel=cancel,
        )

    def clear(self) -> None:
        self._entries.clear()


def build_revocation_store(
    inner: RevocationStore,
    settings: RevocationCacheSettings,
) -> RevocationStore:
    """Wrap *inner* in a :class:`CachedRevocationStore` when caching is enabled."""
    if not settings.enabled:
        return inner
    return CachedRevocationStore(inner, ttl=settings.ttl, max_entries=settings.max_entries)
