"""In-memory cache of resolved conversation keys.

Concurrent misses for the same ``(conversation_id, epoch)`` share one
resolution task. Each caller awaits the task through ``asyncio.shield`` so a
caller can cancel its own wait; the task is cancelled only once every waiter
has gone away.

The cache keeps its own copy of the key bytes in bytearrays and zeroizes that
copy on eviction. Callers always get a fresh immutable ``DerivedKeyMaterial``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from convkeys.config import settings
from convkeys.errors import CacheClosed, EpochRegression, InvalidKeyMaterial
from convkeys.services.crypto import zeroize
from convkeys.services.key_derivation import DerivedKeyMaterial, check_epoch

logger = logging.getLogger(__name__)

CacheKey = tuple[str, int]
Resolver = Callable[[], Awaitable[DerivedKeyMaterial]]


class _Entry:
    __slots__ = ("conversation_id", "epoch", "raw_key", "message_key", "media_key", "auth_key", "last_accessed")

    def __init__(self, material: DerivedKeyMaterial, now: float):
        self.conversation_id = material.conversation_id
        self.epoch = material.epoch
        self.raw_key = bytearray(material.raw_key)
        self.message_key = bytearray(material.message_key)
        self.media_key = bytearray(material.media_key)
        self.auth_key = bytearray(material.auth_key)
        self.last_accessed = now

    def snapshot(self) -> DerivedKeyMaterial:
        return DerivedKeyMaterial(
            conversation_id=self.conversation_id,
            epoch=self.epoch,
            raw_key=bytes(self.raw_key),
            message_key=bytes(self.message_key),
            media_key=bytes(self.media_key),
            auth_key=bytes(self.auth_key),
        )

    def zeroize(self) -> None:
        for buf in (self.raw_key, self.message_key, self.media_key, self.auth_key):
            zeroize(buf)


class _InFlight:
    __slots__ = ("task", "waiters", "closed")

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0
        self.closed = False


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    coalesced: int
    total_entries: int
    in_flight: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses + self.coalesced
        return self.hits / lookups if lookups else 0.0


class ConversationKeyCache:
    def __init__(
        self,
        *,
        idle_ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_ttl_seconds = (
            idle_ttl_seconds if idle_ttl_seconds is not None else settings.cache_idle_minutes * 60.0
        )
        self.max_entries = max(1, max_entries if max_entries is not None else settings.cache_max_entries)
        self._clock = clock
        self._entries: OrderedDict[CacheKey, _Entry] = OrderedDict()
        self._in_flight: dict[CacheKey, _InFlight] = {}
        # Highest epoch handed out per conversation, for the life of the process.
        self._served: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._state = "new"
        self._hits = 0
        self._misses = 0
        self._coalesced = 0

    # ---- lifecycle ----

    def open(self) -> "ConversationKeyCache":
        if self._state == "closed":
            raise CacheClosed("Cache has been shut down")
        self._state = "open"
        return self

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._drop_all()
        logger.info("Cleared %s cached conversation keys", count)
        return count

    async def shutdown(self) -> None:
        async with self._lock:
            self._state = "closed"
            self._drop_all()
            flights = list(self._in_flight.values())
            self._in_flight.clear()
        for flight in flights:
            flight.closed = True
            flight.task.cancel()
        logger.info("Conversation key cache shut down (%s resolutions cancelled)", len(flights))

    async def __aenter__(self) -> "ConversationKeyCache":
        return self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    # ---- lookups ----

    async def get_or_resolve(self, conversation_id: str, epoch: int, resolver: Resolver) -> DerivedKeyMaterial:
        check_epoch(epoch)
        key = (conversation_id, epoch)
        async with self._lock:
            self._ensure_open()
            self._check_monotonic(conversation_id, epoch)
            now = self._clock()
            self._evict_idle(now)
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_accessed = now
                self._entries.move_to_end(key)
                self._hits += 1
                self._mark_served(conversation_id, epoch)
                return entry.snapshot()

            flight = self._in_flight.get(key)
            if flight is None:
                self._misses += 1
                flight = _InFlight(asyncio.create_task(self._resolve(key, resolver)))
                self._in_flight[key] = flight
            else:
                self._coalesced += 1
            flight.waiters += 1

        try:
            material = await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            # The shared task only ends cancelled on shutdown or once every waiter left.
            if flight.closed and flight.task.cancelled():
                raise CacheClosed("Cache was shut down while the key was resolving") from None
            raise
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                logger.info("All waiters left; abandoning resolution for conversation=%s epoch=%s", *key)
                # Unmap before cancelling so a new caller starts a fresh resolution.
                if self._in_flight.get(key) is flight:
                    del self._in_flight[key]
                flight.task.cancel()

        # Another epoch may have been served while this caller was waiting.
        served = self._served.get(conversation_id, 0)
        if epoch < served:
            raise EpochRegression(conversation_id, epoch, served)
        return material

    async def _resolve(self, key: CacheKey, resolver: Resolver) -> DerivedKeyMaterial:
        conversation_id, epoch = key
        try:
            material = await resolver()
            if material.conversation_id != conversation_id or material.epoch != epoch:
                raise InvalidKeyMaterial(
                    f"Resolver returned conversation={material.conversation_id} epoch={material.epoch}, "
                    f"expected conversation={conversation_id} epoch={epoch}"
                )
            async with self._lock:
                self._ensure_open()
                self._check_monotonic(conversation_id, epoch)
                entry = self._install(material)
                self._mark_served(conversation_id, epoch)
                return entry.snapshot()
        finally:
            flight = self._in_flight.get(key)
            if flight is not None and flight.task is asyncio.current_task():
                del self._in_flight[key]

    async def put(self, material: DerivedKeyMaterial) -> None:
        """Commit key material resolved outside get_or_resolve (accepted exchange, issued epoch)."""
        async with self._lock:
            self._ensure_open()
            self._check_monotonic(material.conversation_id, material.epoch)
            self._install(material)

    async def peek(self, conversation_id: str, epoch: int) -> DerivedKeyMaterial | None:
        async with self._lock:
            entry = self._entries.get((conversation_id, epoch))
            return entry.snapshot() if entry is not None else None

    async def invalidate(self, conversation_id: str) -> int:
        async with self._lock:
            keys = [k for k in self._entries if k[0] == conversation_id]
            for k in keys:
                self._entries.pop(k).zeroize()
        if keys:
            logger.info("Invalidated %s cached keys for conversation=%s", len(keys), conversation_id)
        return len(keys)

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._evict_idle(self._clock())

    async def preload(
        self,
        requests: Iterable[tuple[str, int, Resolver]],
    ) -> dict[CacheKey, BaseException]:
        """Resolve several keys concurrently. Returns the failures keyed by (conversation_id, epoch)."""
        requests = list(requests)
        results = await asyncio.gather(
            *(self.get_or_resolve(conv, epoch, resolver) for conv, epoch, resolver in requests),
            return_exceptions=True,
        )
        failures: dict[CacheKey, BaseException] = {}
        for (conv, epoch, _), result in zip(requests, results):
            if isinstance(result, BaseException):
                logger.warning("Preload failed for conversation=%s epoch=%s: %s", conv, epoch, result)
                failures[(conv, epoch)] = result
        return failures

    def highest_served_epoch(self, conversation_id: str) -> int:
        return self._served.get(conversation_id, 0)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            coalesced=self._coalesced,
            total_entries=len(self._entries),
            in_flight=len(self._in_flight),
        )

    # ---- internals (caller holds self._lock) ----

    def _ensure_open(self) -> None:
        if self._state != "open":
            raise CacheClosed(f"Cache is {self._state}")

    def _check_monotonic(self, conversation_id: str, epoch: int) -> None:
        served = self._served.get(conversation_id, 0)
        if epoch < served:
            raise EpochRegression(conversation_id, epoch, served)

    def _mark_served(self, conversation_id: str, epoch: int) -> None:
        if epoch > self._served.get(conversation_id, 0):
            self._served[conversation_id] = epoch

    def _install(self, material: DerivedKeyMaterial) -> _Entry:
        key = (material.conversation_id, material.epoch)
        previous = self._entries.pop(key, None)
        if previous is not None:
            previous.zeroize()
        entry = _Entry(material, self._clock())
        self._entries[key] = entry
        while len(self._entries) > self.max_entries:
            evicted_key, evicted = self._entries.popitem(last=False)
            evicted.zeroize()
            logger.info("Evicted least recently used key conversation=%s epoch=%s", *evicted_key)
        return entry

    def _evict_idle(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if now - e.last_accessed > self.idle_ttl_seconds]
        for k in expired:
            self._entries.pop(k).zeroize()
        if expired:
            logger.info("Dropped %s idle conversation keys", len(expired))
        return len(expired)

    def _drop_all(self) -> None:
        for entry in self._entries.values():
            entry.zeroize()
        self._entries.clear()
