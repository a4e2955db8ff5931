# cache.py
import re
import math
import time
import pickle
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future

import redis

from .errors import VtopError

logger = logging.getLogger("vtop.cache")


class CacheTTL:
    """TTL presets in seconds, picked per data category by how often it changes upstream."""

    SHORT = 30
    MEDIUM = 5 * 60
    LONG = 30 * 60
    EXTENDED = 2 * 60 * 60


class _Entry:
    __slots__ = ("value", "expires_at", "accessed_at")

    def __init__(self, value, expires_at, accessed_at):
        self.value = value
        self.expires_at = expires_at
        self.accessed_at = accessed_at


class LRUCache:
    """
    Thread-safe, in-process, time-boxed LRU store.

    The OrderedDict is kept in access order (oldest first), so the first
    live entry is always the least recently used one. One lock guards the
    map together with its ordering.
    """

    def __init__(self, max_size=100, default_ttl=CacheTTL.MEDIUM, clock=time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key):
        """Return the cached value, or None on a miss (expired entries are dropped)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if now > entry.expires_at:
                del self._entries[key]
                return None
            entry.accessed_at = now
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key, value, ttl=None):
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict(now)
            ttl = self.default_ttl if ttl is None else ttl
            self._entries[key] = _Entry(value, now + ttl, now)
            self._entries.move_to_end(key)

    def delete(self, key):
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern):
        """Drop every key matching the regex; returns how many were dropped."""
        regex = re.compile(pattern)
        with self._lock:
            doomed = [key for key in self._entries if regex.search(key)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self):
        with self._lock:
            return {"size": len(self._entries), "max_size": self.max_size}

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None

    def _evict(self, now):
        # Caller holds the lock.
        victim = None
        for key, entry in list(self._entries.items()):
            if now > entry.expires_at:
                del self._entries[key]
            elif victim is None:
                victim = key
        if victim is not None and len(self._entries) >= self.max_size:
            del self._entries[victim]
            logger.debug(f"[Cache] Evicted least recently used key '{victim}'")


class RedisCache:
    """
    Same surface as LRUCache, backed by Redis so several worker processes
    share one cache. Values are pickled; Redis failures are logged and
    behave like a miss.
    """

    def __init__(self, redis_client, namespace, default_ttl=CacheTTL.MEDIUM):
        self.redis_client = redis_client
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.max_size = None

    def _key(self, key):
        return f"{self.namespace}:{key}"

    def _strip(self, raw_key):
        if isinstance(raw_key, bytes):
            raw_key = raw_key.decode("utf-8", "replace")
        return raw_key[len(self.namespace) + 1:]

    def get(self, key):
        full_key = self._key(key)
        try:
            data = self.redis_client.get(full_key)
        except redis.exceptions.RedisError as e:
            logger.error(f"[Cache] Get error for key '{full_key}': {e}")
            return None
        if not data:
            return None
        try:
            return pickle.loads(data)
        except (pickle.UnpicklingError, EOFError, AttributeError, TypeError) as e:
            logger.error(f"[Cache] Corrupt value for key '{full_key}': {e}. Dropping it.")
            try:
                self.redis_client.delete(full_key)
            except redis.exceptions.RedisError as del_e:
                logger.error(f"[Cache] Failed to delete corrupted key '{full_key}': {del_e}")
            return None

    def set(self, key, value, ttl=None):
        full_key = self._key(key)
        ttl = self.default_ttl if ttl is None else ttl
        try:
            payload = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
            self.redis_client.setex(full_key, max(1, int(math.ceil(ttl))), payload)
        except redis.exceptions.RedisError as e:
            logger.error(f"[Cache] Set error for key '{full_key}': {e}")

    def delete(self, key):
        try:
            return bool(self.redis_client.delete(self._key(key)))
        except redis.exceptions.RedisError as e:
            logger.error(f"[Cache] Delete error for key '{key}': {e}")
            return False

    def invalidate_pattern(self, pattern):
        regex = re.compile(pattern)
        count = 0
        try:
            for raw_key in self.redis_client.scan_iter(match=f"{self.namespace}:*"):
                if regex.search(self._strip(raw_key)):
                    self.redis_client.delete(raw_key)
                    count += 1
        except redis.exceptions.RedisError as e:
            logger.error(f"[Cache] Invalidate error for pattern '{pattern}': {e}")
        return count

    def clear(self):
        self.invalidate_pattern("")

    def stats(self):
        try:
            size = sum(1 for _ in self.redis_client.scan_iter(match=f"{self.namespace}:*"))
        except redis.exceptions.RedisError as e:
            logger.error(f"[Cache] Stats error: {e}")
            size = 0
        return {"size": size, "max_size": self.max_size}


# -------------------------------
# Registry
# -------------------------------

# category -> (max entries or None for the configured default, ttl)
CATEGORY_PRESETS = {
    "profile": (None, CacheTTL.LONG),
    "attendance": (None, CacheTTL.MEDIUM),
    "timetable": (None, CacheTTL.EXTENDED),
    "grades": (None, CacheTTL.EXTENDED),
    "marks": (None, CacheTTL.MEDIUM),
    "curriculum": (None, CacheTTL.EXTENDED),
    "semesters": (10, CacheTTL.EXTENDED),
    "exam_schedule": (None, CacheTTL.LONG),
    "course_page": (None, CacheTTL.EXTENDED),
}


class CacheRegistry:
    """
    One cache per data category, built once at process start and handed to
    whatever constructs the service.
    """

    def __init__(self, caches):
        self._caches = dict(caches)

    @classmethod
    def in_memory(cls, max_size=50, clock=time.monotonic):
        return cls(
            {
                category: LRUCache(size or max_size, ttl, clock=clock)
                for category, (size, ttl) in CATEGORY_PRESETS.items()
            }
        )

    @classmethod
    def with_redis(cls, redis_client, prefix="vtop"):
        return cls(
            {
                category: RedisCache(redis_client, f"{prefix}:{category}", ttl)
                for category, (_, ttl) in CATEGORY_PRESETS.items()
            }
        )

    @classmethod
    def from_config(cls, cfg):
        if cfg.REDIS_URL:
            redis_client = redis.from_url(cfg.REDIS_URL)
            logger.info("Using Redis-backed caches.")
            return cls.with_redis(redis_client)
        return cls.in_memory(cfg.CACHE_MAX_SIZE)

    def __getitem__(self, category):
        return self._caches[category]

    def __contains__(self, category):
        return category in self._caches

    def categories(self):
        return list(self._caches)

    def clear_user(self, registration_number):
        """Purge everything cached for one user (used on logout)."""
        pattern = f"^{re.escape(registration_number)}:"
        removed = sum(cache.invalidate_pattern(pattern) for cache in self._caches.values())
        logger.info(f"[Cache] Cleared {removed} entries for {registration_number}")
        return removed

    def clear(self):
        for cache in self._caches.values():
            cache.clear()


def user_cache_key(registration_number, data_type, *params):
    """<user>:<kind>[:<param>...]"""
    suffix = ":" + ":".join(params) if params else ""
    return f"{registration_number}:{data_type}{suffix}"


class InflightRequests:
    """
    De-duplicates concurrent identical fetches: while one caller is
    fetching a key, other callers for the same key wait for its result.
    Errors that require re-authentication are not shared; a waiter that
    sees one runs its own fetch.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._futures = {}

    def run(self, key, fetcher):
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._futures[key] = future
        if not owner:
            try:
                return future.result()
            except VtopError as e:
                # Re-auth errors belong to the owner's session.
                if not e.requires_reauth:
                    raise
            logger.debug(f"[Cache] Shared fetch for '{key}' needs re-auth; fetching separately")
            return fetcher()
        try:
            result = fetcher()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._futures.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._futures)


def cache_or_fetch(cache, key, fetcher, ttl=None, inflight=None):
    cached = cache.get(key)
    if cached is not None:
        logger.debug(f"[Cache] Hit for '{key}'")
        return cached

    def _load():
        fresh = fetcher()
        cache.set(key, fresh, ttl)
        return fresh

    if inflight is not None:
        return inflight.run(key, _load)
    return _load()
