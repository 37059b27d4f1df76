"""Reliable, deduplicated resource retrieval.

The FetchCoordinator sits between the tools and the transport. For every
request it:
1. Serves a live cache entry if the caller asked for caching
2. Joins an identical request that is already in flight (coalescing)
3. Otherwise walks the query chain for the kind, primary first, moving on
   to the next fallback whenever an attempt fails or times out

Concept — Coalescing:
    When the model asks for vitals in two tool calls of the same round, both
    calls land here before either has finished. Instead of two identical
    network requests, the second caller awaits the first caller's task.
    The task removes itself from the pending registry in a finally block,
    so a failure can never leave a stale entry behind.

The cache and the pending registry are the only shared mutable state in
the core, and both live on this instance.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, NamedTuple

from ehr_assistant.catalog import ResourceCatalog, ResourceSpec
from ehr_assistant.config import FHIR_REQUEST_TIMEOUT
from ehr_assistant.errors import (
    AllFallbacksExhaustedError,
    NetworkError,
    OperationCancelledError,
    SnapshotError,
)
from ehr_assistant.fhir_client import Transport
from ehr_assistant.queries import FetchOptions, build_queries, options_key
from ehr_assistant.snapshots import CacheEntry, CacheSnapshot

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    kind: str
    options: str

    @classmethod
    def build(cls, kind: str, options: FetchOptions) -> CacheKey:
        """Deterministic key for a (kind, options) pair."""
        return cls(kind, options_key(options))


class FetchCoordinator:
    """Executes query chains with fallback, caching and coalescing.

    Args:
        catalog: Resource metadata.
        transport: Resolves one query string to parsed JSON (FHIRClient).
        context: Binding context for templates, e.g. {"patient_id": "123"}.
            Its patient_id and server_url also name whose data the cache holds.
        attempt_timeout: Deadline in seconds for each individual attempt.
        clock: Wall-clock source for cache timestamps (seconds).
    """

    def __init__(
        self,
        catalog: ResourceCatalog,
        transport: Transport,
        context: Mapping[str, str | None] | None = None,
        attempt_timeout: float = FHIR_REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.catalog = catalog
        self._transport = transport
        self._context = dict(context or {})
        self._attempt_timeout = attempt_timeout
        self._clock = clock
        self._cache: dict[CacheKey, CacheEntry] = {}
        self._pending: dict[CacheKey, asyncio.Task[Any]] = {}

    async def fetch(
        self,
        kind: str,
        options: FetchOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Fetch a resource kind, falling back through its query chain.

        Args:
            kind: Registered resource kind (e.g. "VitalSigns").
            options: Query and cache options.
            cancel: When set, the running attempt is abandoned and the chain stops.

        Returns:
            The raw JSON payload from the first query that succeeded.

        Raises:
            ConfigError: If the kind is unknown or a template binding is missing.
            AllFallbacksExhaustedError: If every query in the chain failed.
            OperationCancelledError: If cancel was set before the chain finished.
        """
        options = options or FetchOptions()
        spec = self.catalog.get(kind)
        key = CacheKey.build(kind, options)

        if options.use_cache:
            entry = self._cache.get(key)
            if entry is not None:
                if entry.is_live(self._clock()):
                    logger.debug("Cache hit for %s", kind)
                    return entry.data
                del self._cache[key]

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._settle(key, spec, options, cancel))
            self._pending[key] = task
        else:
            logger.debug("Joining in-flight request for %s", kind)

        # shield: one caller being cancelled must not cancel the shared task
        return await asyncio.shield(task)

    async def _settle(
        self,
        key: CacheKey,
        spec: ResourceSpec,
        options: FetchOptions,
        cancel: asyncio.Event | None,
    ) -> Any:
        try:
            data = await self._fetch_with_fallbacks(spec, options, cancel)
            if options.use_cache:
                self._cache[key] = CacheEntry(
                    kind=spec.kind,
                    options=key.options,
                    data=data,
                    stored_at=self._clock(),
                    ttl=options.cache_ttl,
                )
            return data
        finally:
            self._pending.pop(key, None)

    async def _fetch_with_fallbacks(
        self,
        spec: ResourceSpec,
        options: FetchOptions,
        cancel: asyncio.Event | None,
    ) -> Any:
        queries = build_queries(spec, options, self._context)
        last_error = ""

        for position, query in enumerate(queries):
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"Fetch for {spec.kind} was cancelled")
            try:
                data = await asyncio.wait_for(
                    self._attempt(spec, query, cancel), timeout=self._attempt_timeout
                )
            except asyncio.TimeoutError:
                last_error = f"Timed out after {self._attempt_timeout:g}s: {query}"
            except NetworkError as exc:
                last_error = str(exc)
            else:
                if position:
                    logger.info("Fallback %d succeeded for %s", position, spec.kind)
                return data

            label = "Primary fetch" if position == 0 else f"Fallback {position}"
            logger.warning("%s failed for %s: %s", label, spec.kind, last_error)

        raise AllFallbacksExhaustedError(spec.kind, last_error)

    async def _attempt(
        self,
        spec: ResourceSpec,
        query: str,
        cancel: asyncio.Event | None,
    ) -> Any:
        """One transport call, abandoned as soon as cancel is set."""
        request = asyncio.ensure_future(self._transport.get(query))
        if cancel is None:
            return await request

        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            request.cancel()
        if request in done:
            return request.result()
        raise OperationCancelledError(f"Fetch for {spec.kind} was cancelled")

    def invalidate(self, kind: str | None = None) -> None:
        """Drop cached entries for one kind, or everything if kind is None."""
        if kind is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k.kind == kind]:
            del self._cache[key]

    def pending_count(self) -> int:
        """Number of requests currently in flight."""
        return len(self._pending)

    def cache_stats(self) -> dict[str, Any]:
        """Summary of cache contents: entry count, age and payload size."""
        now = self._clock()
        entries = [
            {
                "kind": key.kind,
                "options": key.options,
                "age": now - entry.stored_at,
                "size": len(json.dumps(entry.data, default=str)),
            }
            for key, entry in self._cache.items()
        ]
        return {"totalEntries": len(entries), "entries": entries}

    def snapshot(self) -> CacheSnapshot:
        """Live cache entries in their persistable form."""
        now = self._clock()
        patient_id, server_url = self._owner()
        return CacheSnapshot(
            patient_id=patient_id,
            server_url=server_url,
            entries=[entry for entry in self._cache.values() if entry.is_live(now)],
        )

    def restore(self, snapshot: CacheSnapshot) -> int:
        """Load entries from a snapshot, skipping expired ones.

        Returns:
            The number of entries restored.

        Raises:
            SnapshotError: If the snapshot holds another patient's or server's data.
        """
        owner = (snapshot.patient_id or None, snapshot.server_url or None)
        expected = self._owner()
        if owner != expected:
            raise SnapshotError(
                f"Cache snapshot for patient {owner[0]!r} on {owner[1]!r} cannot be "
                f"restored for patient {expected[0]!r} on {expected[1]!r}"
            )
        now = self._clock()
        restored = 0
        for entry in snapshot.entries:
            if entry.kind not in self.catalog or not entry.is_live(now):
                continue
            self._cache[CacheKey(entry.kind, entry.options)] = entry
            restored += 1
        logger.info("Restored %d cache entries", restored)
        return restored

    def _owner(self) -> tuple[str | None, str | None]:
        return self._context.get("patient_id") or None, self._context.get("server_url") or None
