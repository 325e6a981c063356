"""Limits on how many routing-table peers may share an IP group."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Hashable, Iterable

ConnectionsFn = Callable[[bytes], Iterable[str]]


@dataclass(frozen=True)
class PeerGroupInfo:
    """A peer's common prefix length with us and the IP group it belongs to."""

    cpl: int
    ip_group_key: Hashable
    peer: bytes = b""


class RTPeerIPGroupFilter:
    """Allows a peer into the routing table only while its IP group is under quota.

    A group may hold at most ``max_per_cpl`` peers in any one common-prefix-length
    bucket and at most ``max_for_table`` peers in the whole table.
    ``connections`` maps a peer to the remote addresses of its open connections.
    """

    def __init__(self, connections: ConnectionsFn, max_per_cpl: int, max_for_table: int) -> None:
        self._connections = connections
        self.max_per_cpl = max_per_cpl
        self.max_for_table = max_for_table
        self._lock = threading.Lock()
        self._cpl_counts: dict[int, Counter] = {}
        self._table_counts: Counter = Counter()

    def allow(self, group: PeerGroupInfo) -> bool:
        """Return True if one more peer of ``group`` fits within both quotas."""
        with self._lock:
            if self._table_counts[group.ip_group_key] >= self.max_for_table:
                return False
            per_cpl = self._cpl_counts.get(group.cpl)
            return per_cpl is None or per_cpl[group.ip_group_key] < self.max_per_cpl

    def increment(self, group: PeerGroupInfo) -> None:
        """Count one more peer of ``group`` as present in the table."""
        with self._lock:
            self._table_counts[group.ip_group_key] += 1
            self._cpl_counts.setdefault(group.cpl, Counter())[group.ip_group_key] += 1

    def decrement(self, group: PeerGroupInfo) -> None:
        """Count one peer of ``group`` as gone; raises KeyError if none was counted."""
        key = group.ip_group_key
        with self._lock:
            per_cpl = self._cpl_counts.get(group.cpl)
            if per_cpl is None or per_cpl[key] <= 0 or self._table_counts[key] <= 0:
                raise KeyError(f"no peer of group {key!r} counted at cpl {group.cpl}")
            self._table_counts[key] -= 1
            if self._table_counts[key] == 0:
                del self._table_counts[key]
            per_cpl[key] -= 1
            if per_cpl[key] == 0:
                del per_cpl[key]
            if not per_cpl:
                del self._cpl_counts[group.cpl]

    def peer_addresses(self, peer: bytes) -> list[str]:
        """Remote addresses of the connections currently open to ``peer``."""
        return list(self._connections(peer))