"""Provider records: storage, caching and expiry."""

from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Iterator, Optional

from cachetools import LRUCache

log = logging.getLogger(__name__)

PROVIDERS_KEY_PREFIX = "/providers/"
"""Namespace of every provider record key in the datastore."""

PROVIDE_VALIDITY = 24 * 3600 * 1_000_000_000
"""How long a provider record lasts, in nanoseconds."""

DEFAULT_CLEANUP_INTERVAL = 3600.0
"""Seconds between garbage-collection runs."""

LRU_CACHE_SIZE = 256

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_MAX_VARINT_LEN = 10


@dataclass
class ProviderSet:
    """Providers of one key, in insertion order, with the time each was added."""

    providers: list[bytes] = field(default_factory=list)
    times: dict[bytes, int] = field(default_factory=dict)

    def add(self, peer: bytes) -> None:
        """Record ``peer`` as a provider as of now."""
        self.set_time(peer, time.time_ns())

    def set_time(self, peer: bytes, when: int) -> None:
        """Record ``peer`` as a provider as of ``when`` (nanoseconds since the epoch)."""
        if peer not in self.times:
            self.providers.append(peer)
        self.times[peer] = when

    def __len__(self) -> int:
        return len(self.providers)

    def __contains__(self, peer: object) -> bool:
        return peer in self.times


class MapDatastore:
    """An in-memory key/value store keyed by slash-separated paths."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def get(self, key: str) -> bytes:
        """Return the value under ``key``; raises KeyError if absent."""
        with self._lock:
            return self._data[key]

    def delete(self, key: str) -> None:
        """Remove ``key``; raises KeyError if absent."""
        with self._lock:
            del self._data[key]

    def query(self, prefix: str) -> list[tuple[str, bytes]]:
        """Return ``(key, value)`` pairs whose key lies under the path ``prefix``."""
        base = prefix.rstrip("/")
        with self._lock:
            items = [
                (k, v)
                for k, v in self._data.items()
                if not base or k == base or k.startswith(base + "/")
            ]
        return sorted(items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    return base64.b32decode(text + "=" * (-len(text) % 8))


def make_provider_key(key: bytes) -> str:
    """Datastore path under which all providers of ``key`` live."""
    return PROVIDERS_KEY_PREFIX + _b32encode(bytes(key))


def make_provider_key_for(key: bytes, peer: bytes) -> str:
    """Datastore path of the record saying ``peer`` provides ``key``."""
    return make_provider_key(key) + "/" + _b32encode(bytes(peer))


def encode_time_value(nanoseconds: int) -> bytes:
    """Encode a signed 64-bit timestamp as a zig-zag varint."""
    if not _INT64_MIN <= nanoseconds <= _INT64_MAX:
        raise OverflowError("timestamp does not fit in 64 bits")
    value = nanoseconds * 2 if nanoseconds >= 0 else -nanoseconds * 2 - 1
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def read_time_value(data: bytes) -> int:
    """Decode a zig-zag varint timestamp; raises ValueError on malformed data."""
    value = 0
    shift = 0
    for i, byte in enumerate(data):
        if i == _MAX_VARINT_LEN:
            break
        if byte < 0x80:
            if i == _MAX_VARINT_LEN - 1 and byte > 1:
                break
            value |= byte << shift
            result = value >> 1
            return ~result if value & 1 else result
        value |= (byte & 0x7F) << shift
        shift += 7
    raise ValueError("failed to parse time")


def write_provider_entry(datastore: MapDatastore, key: bytes, peer: bytes, nanoseconds: int) -> None:
    """Store the record that ``peer`` provides ``key`` as of ``nanoseconds``."""
    datastore.put(make_provider_key_for(key, peer), encode_time_value(nanoseconds))


def _remove(datastore: MapDatastore, key: str) -> None:
    with suppress(KeyError):
        datastore.delete(key)


def load_provider_set(datastore: MapDatastore, key: bytes, now: Optional[int] = None) -> ProviderSet:
    """Load the providers of ``key``, deleting expired and corrupt records."""
    if now is None:
        now = time.time_ns()
    out = ProviderSet()
    for record_key, value in datastore.query(make_provider_key(key)):
        try:
            added = read_time_value(value)
        except ValueError as err:
            log.error("parsing providers record from disk: %s", err)
            _remove(datastore, record_key)
            continue
        if now - added > PROVIDE_VALIDITY:
            _remove(datastore, record_key)
            continue
        encoded_peer = record_key[record_key.rfind("/") + 1:]
        try:
            peer = _b32decode(encoded_peer)
        except (binascii.Error, ValueError) as err:
            log.error("base32 decoding error: %s", err)
            _remove(datastore, record_key)
            continue
        out.set_time(peer, added)
    return out


class ProviderManager:
    """Adds and looks up providers in a datastore, caching sets in between.

    When ``cleanup_interval`` (seconds) is not None, expired records are
    collected periodically in a background thread until :meth:`close`.
    """

    def __init__(
        self,
        local: bytes,
        datastore: Optional[MapDatastore] = None,
        cleanup_interval: Optional[float] = DEFAULT_CLEANUP_INTERVAL,
        cache_size: int = LRU_CACHE_SIZE,
    ) -> None:
        if cache_size <= 0:
            raise ValueError("cache size must be positive")
        if cleanup_interval is not None and cleanup_interval <= 0:
            raise ValueError("cleanup interval must be positive")
        self.local = local
        self.datastore = datastore if datastore is not None else MapDatastore()
        self.cleanup_interval = cleanup_interval
        self._cache: LRUCache = LRUCache(maxsize=cache_size)
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._gc_thread: Optional[threading.Thread] = None
        if cleanup_interval is not None:
            self._gc_thread = threading.Thread(
                target=self._gc_loop, name="provider-gc", daemon=True
            )
            self._gc_thread.start()

    def __enter__(self) -> "ProviderManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _gc_loop(self) -> None:
        assert self.cleanup_interval is not None
        while not self._closed.wait(self.cleanup_interval):
            try:
                self.collect_garbage()
            except Exception:  # keep collecting on later rounds
                log.exception("provider record GC failed")

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise RuntimeError("provider manager is closed")

    def add_provider(self, key: bytes, peer: bytes) -> None:
        """Record that ``peer`` provides ``key``."""
        self._check_open()
        key = bytes(key)
        now = time.time_ns()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                cached.set_time(peer, now)
            write_provider_entry(self.datastore, key, peer, now)

    def get_providers(self, key: bytes) -> list[bytes]:
        """Return the providers of ``key`` in the order they were first added."""
        self._check_open()
        key = bytes(key)
        with self._lock:
            cached = self._cache.get(key)
            if cached is None:
                cached = load_provider_set(self.datastore, key)
                if cached.providers:
                    self._cache[key] = cached
            return list(cached.providers)

    def collect_garbage(self, now: Optional[int] = None) -> int:
        """Drop the cache and delete expired or corrupt records; return how many were deleted."""
        if now is None:
            now = time.time_ns()
        removed = 0
        with self._lock:
            self._cache.clear()
            for record_key, value in self.datastore.query(PROVIDERS_KEY_PREFIX):
                try:
                    added = read_time_value(value)
                except ValueError as err:
                    log.error("parsing providers record from disk: %s", err)
                else:
                    if now - added <= PROVIDE_VALIDITY:
                        continue
                _remove(self.datastore, record_key)
                removed += 1
        return removed

    def cached_keys(self) -> Iterator[bytes]:
        """Keys whose provider sets are currently cached."""
        with self._lock:
            return iter(list(self._cache.keys()))

    def close(self) -> None:
        """Stop background collection. Safe to call more than once."""
        self._closed.set()
        thread = self._gc_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()