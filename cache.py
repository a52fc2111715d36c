"""
cache.py
========
Two cache tiers and the read-through cache that composes them.

LocalCache (L1)
    In-memory TTL map private to one process. Never authoritative.

RedisCache (L2)
    Shared by every instance. Values are stored as JSON. Reads and writes
    degrade to a miss/no-op when Redis is down; pattern deletion and
    set-if-absent raise DependencyUnavailable so the caller decides.

TwoTierCache
    get_or_compute(key, compute, l1_ttl, l2_ttl, expires_in): L1 -> L2
    (back-fills L1) -> compute (fills both).
    invalidate(prefix): bumps the generation, drops matching keys from L2 and
    this process's L1, and publishes the prefix so every other instance drops
    it from its L1.

A computed value is stored only if no invalidation ran while it was being
computed: the generation read before compute() must still be current when
the value is written. A value computed from data an admin has since changed
is returned to its caller but never cached.
"""

import copy
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError, WatchError

from errors import DependencyUnavailable

logger = logging.getLogger(__name__)

INVALIDATION_CHANNEL = "cache:invalidate"
GENERATION_KEY = "cache:generation"


class LocalCache:
    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
        # Callers get their own copy so a mutated result never leaks back in.
        return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + ttl, copy.deepcopy(value))

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            matching = [key for key in self._entries if key.startswith(prefix)]
            for key in matching:
                del self._entries[key]
        if matching:
            logger.info(f"L1 invalidated {len(matching)} keys under {prefix!r}")
        return len(matching)

    def keys(self):
        with self._lock:
            now = self._clock()
            return [key for key, (expires_at, _) in self._entries.items() if expires_at > now]

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "keys": len(self.keys()),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }


class RedisCache:
    def __init__(self, client):
        self.client = client

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except RedisError as exc:
            logger.error(f"L2 get failed for {key}: {exc}")
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            self.client.set(key, json.dumps(value), ex=ttl)
        except RedisError as exc:
            logger.error(f"L2 set failed for {key}: {exc}")

    def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """Single atomic SET NX EX; True when this call created the key."""
        try:
            created = self.client.set(key, json.dumps(value), nx=True, ex=ttl)
        except RedisError as exc:
            raise DependencyUnavailable(f"Cache unavailable: {exc}") from exc
        return bool(created)

    def generation(self) -> int:
        try:
            raw = self.client.get(GENERATION_KEY)
        except RedisError as exc:
            raise DependencyUnavailable(f"Cache unavailable: {exc}") from exc
        return int(raw or 0)

    def bump_generation(self) -> int:
        try:
            return int(self.client.incr(GENERATION_KEY))
        except RedisError as exc:
            raise DependencyUnavailable(f"Cache unavailable: {exc}") from exc

    def set_if_generation(self, key: str, value: Any, ttl: int, generation: int) -> bool:
        """
        Store `value` only while the generation is still `generation`.

        WATCH on the generation key makes the comparison and the SET one
        transaction: an invalidation landing in between aborts the write.
        """
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(GENERATION_KEY)
                if int(pipe.get(GENERATION_KEY) or 0) != generation:
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(value), ex=ttl)
                pipe.execute()
        except WatchError:
            return False
        except RedisError as exc:
            logger.error(f"L2 set failed for {key}: {exc}")
            return False
        return True

    def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            batch = []
            for key in self.client.scan_iter(match=pattern, count=100):
                batch.append(key)
                if len(batch) >= 100:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        except RedisError as exc:
            raise DependencyUnavailable(f"Cache unavailable: {exc}") from exc
        return deleted

    def publish(self, channel: str, message: str) -> None:
        try:
            self.client.publish(channel, message)
        except RedisError as exc:
            raise DependencyUnavailable(f"Cache unavailable: {exc}") from exc


class TwoTierCache:
    def __init__(self, l1: LocalCache, l2: RedisCache, l1_ttl: int = 60, l2_ttl: int = 300):
        if l1_ttl > l2_ttl:
            raise ValueError("L1 TTL must not exceed L2 TTL")
        self.l1 = l1
        self.l2 = l2
        self.l1_ttl = l1_ttl
        self.l2_ttl = l2_ttl
        self._listener = None
        # Local counterpart of the Redis generation, guarding L1 writes.
        self._local_generation = 0
        self._local_guard = threading.Lock()

    def _fill_l1(self, key: str, value: Any, ttl: int, local_generation: int) -> None:
        with self._local_guard:
            if self._local_generation == local_generation:
                self.l1.set(key, value, ttl)

    def _drop_local(self, prefix: str) -> None:
        with self._local_guard:
            self._local_generation += 1
            self.l1.delete_prefix(prefix)

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        l1_ttl: Optional[int] = None,
        l2_ttl: Optional[int] = None,
        expires_in: Optional[Callable[[Any], Optional[float]]] = None,
    ) -> Any:
        """
        `expires_in(value)` may return the seconds the computed value stays
        correct; both TTLs are capped to it, and a value good for less than a
        second is not cached at all.
        """
        l1_ttl = self.l1_ttl if l1_ttl is None else l1_ttl
        l2_ttl = self.l2_ttl if l2_ttl is None else l2_ttl
        if l1_ttl > l2_ttl:
            raise ValueError("L1 TTL must not exceed L2 TTL")

        value = self.l1.get(key)
        if value is not None:
            logger.debug(f"L1 hit: {key}")
            return value

        local_generation = self._local_generation
        value = self.l2.get(key)
        if value is not None:
            logger.debug(f"L2 hit: {key}")
            self._fill_l1(key, value, l1_ttl, local_generation)
            return value

        logger.debug(f"Cache miss (L1+L2): {key}")
        try:
            generation = self.l2.generation()
        except DependencyUnavailable:
            generation = None
        value = compute()
        if value is None:
            return value

        if expires_in is not None:
            remaining = expires_in(value)
            if remaining is not None:
                remaining = int(remaining)
                if remaining < 1:
                    logger.debug(f"Not caching {key}: changes within a second")
                    return value
                l1_ttl = min(l1_ttl, remaining)
                l2_ttl = min(l2_ttl, remaining)

        if generation is None:
            self._fill_l1(key, value, l1_ttl, local_generation)
        elif self.l2.set_if_generation(key, value, l2_ttl, generation):
            self._fill_l1(key, value, l1_ttl, local_generation)
        else:
            logger.debug(f"Not caching {key}: invalidated while computing")
        return value

    def invalidate(self, prefix: str) -> bool:
        """
        Drop every key starting with `prefix` from both tiers.

        The generation is bumped before any key is deleted, so a reader that
        computed from the old state cannot write its result back afterwards.

        Returns False when L2 could not confirm the deletion. The mutation that
        triggered the call has already happened, so this does not raise; it logs
        at CRITICAL because stale prices may now be served.
        """
        confirmed = True
        deleted = 0
        try:
            self.l2.bump_generation()
            deleted = self.l2.delete_pattern(f"{prefix}*")
            self.l2.publish(INVALIDATION_CHANNEL, prefix)
        except DependencyUnavailable as exc:
            logger.critical(f"Cache invalidation NOT confirmed for {prefix!r}: {exc.message}")
            confirmed = False
        self._drop_local(prefix)
        if confirmed:
            logger.info(f"Invalidated {prefix!r} ({deleted} L2 keys)")
        return confirmed

    def handle_invalidation(self, message: dict) -> None:
        if message.get("type") != "message":
            return
        prefix = message.get("data")
        if isinstance(prefix, bytes):
            prefix = prefix.decode()
        self._drop_local(prefix)

    def start_listener(self, sleep_time: float = 0.5):
        """Subscribe this instance's L1 to invalidations broadcast by its peers."""
        pubsub = self.l2.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{INVALIDATION_CHANNEL: self.handle_invalidation})
        self._listener = pubsub.run_in_thread(sleep_time=sleep_time, daemon=True)
        return self._listener

    def stop_listener(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
