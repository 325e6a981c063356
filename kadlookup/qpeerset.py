"""Peer bookkeeping for a single asynchronous Kademlia lookup."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass
from typing import Iterable, Union

BytesLike = Union[bytes, bytearray, memoryview, str]


def _as_bytes(data: BytesLike) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def keyspace_key(data: BytesLike) -> bytes:
    """Map an identifier or key into the XOR keyspace (its SHA-256 digest)."""
    return hashlib.sha256(_as_bytes(data)).digest()


def xor_distance(a: bytes, b: bytes) -> int:
    """Return the XOR distance between two keyspace keys as an integer."""
    if len(a) != len(b):
        raise ValueError("keys of different lengths cannot be compared")
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def closer(a: BytesLike, b: BytesLike, key: BytesLike) -> bool:
    """Return True if peer ``a`` is strictly closer to ``key`` than peer ``b``."""
    target = keyspace_key(key)
    return xor_distance(keyspace_key(a), target) < xor_distance(keyspace_key(b), target)


class PeerState(enum.IntEnum):
    """State of a peer during the lifecycle of one lookup."""

    HEARD = 0
    """Known about but not yet queried."""
    WAITING = 1
    """A query to the peer is outstanding."""
    QUERIED = 2
    """Queried and answered successfully."""
    UNREACHABLE = 3
    """Queried without a successful answer."""


@dataclass
class _PeerEntry:
    peer: bytes
    distance: int
    state: PeerState
    referred_by: bytes


class QueryPeerset:
    """The set of peers known to a lookup, each labelled with a :class:`PeerState`."""

    def __init__(self, key: BytesLike) -> None:
        self._key = keyspace_key(key)
        self._entries: list[_PeerEntry] = []
        self._index: dict[bytes, _PeerEntry] = {}
        self._sorted = False

    @property
    def key(self) -> bytes:
        """The keyspace key of the lookup target."""
        return self._key

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, peer: object) -> bool:
        return isinstance(peer, (bytes, bytearray, str)) and _as_bytes(peer) in self._index

    def _entry(self, peer: BytesLike) -> _PeerEntry:
        try:
            return self._index[_as_bytes(peer)]
        except KeyError:
            raise KeyError(f"peer {peer!r} is not in the peer set") from None

    def try_add(self, peer: BytesLike, referred_by: BytesLike) -> bool:
        """Add ``peer`` in state HEARD; return False if it was already present."""
        peer_id = _as_bytes(peer)
        if peer_id in self._index:
            return False
        entry = _PeerEntry(
            peer=peer_id,
            distance=xor_distance(keyspace_key(peer_id), self._key),
            state=PeerState.HEARD,
            referred_by=_as_bytes(referred_by),
        )
        self._entries.append(entry)
        self._index[peer_id] = entry
        self._sorted = False
        return True

    def _sort(self) -> None:
        if not self._sorted:
            self._entries.sort(key=lambda e: e.distance)
            self._sorted = True

    def set_state(self, peer: BytesLike, state: PeerState) -> None:
        """Set the state of ``peer``; raises KeyError if it is unknown."""
        self._entry(peer).state = PeerState(state)

    def get_state(self, peer: BytesLike) -> PeerState:
        """Return the state of ``peer``; raises KeyError if it is unknown."""
        return self._entry(peer).state

    def get_referrer(self, peer: BytesLike) -> bytes:
        """Return the peer that told us about ``peer``; raises KeyError if unknown."""
        return self._entry(peer).referred_by

    def closest_n_in_states(self, n: int, *states: PeerState) -> list[bytes]:
        """Return up to ``n`` peers in any of ``states``, closest to the key first."""
        if n < 0:
            raise ValueError("n must not be negative")
        self._sort()
        wanted = set(states)
        return [e.peer for e in self._entries if e.state in wanted][:n]

    def closest_in_states(self, *states: PeerState) -> list[bytes]:
        """Return all peers in any of ``states``, closest to the key first."""
        return self.closest_n_in_states(len(self._entries), *states)

    def num_heard(self) -> int:
        """Number of peers in state HEARD."""
        return self._count(PeerState.HEARD)

    def num_waiting(self) -> int:
        """Number of peers in state WAITING."""
        return self._count(PeerState.WAITING)

    def _count(self, state: PeerState) -> int:
        return sum(1 for e in self._entries if e.state == state)

    def peers(self) -> Iterable[bytes]:
        """Iterate over all peers, closest to the key first."""
        self._sort()
        return [e.peer for e in self._entries]