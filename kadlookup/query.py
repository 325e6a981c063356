"""Asynchronous Kademlia lookups driven over a pluggable network."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional, Union

from kadlookup.qpeerset import PeerState, QueryPeerset, keyspace_key, xor_distance

log = logging.getLogger(__name__)

PeerLike = Union[bytes, bytearray, str]
QueryFn = Callable[[bytes], Awaitable[Optional[Iterable[PeerLike]]]]
StopFn = Callable[[], bool]
PeerFilter = Callable[[bytes], bool]


def _as_bytes(value: PeerLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _never() -> bool:
    return False


class TerminationReason(enum.Enum):
    """Why a lookup stopped."""

    COMPLETED = "completed"
    STARVATION = "starvation"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class LookupFailure(LookupError):
    """Raised when there is no peer to start a lookup from."""

    def __init__(self, message: str = "failed to find any peer in table") -> None:
        super().__init__(message)


@dataclass
class LookupResult:
    """The closest not-unreachable peers at the end of a lookup, with their states."""

    peers: list[bytes]
    states: list[PeerState]
    completed: bool


@dataclass
class QueryUpdate:
    """What one query to a peer taught the lookup."""

    cause: bytes
    queried: list[bytes] = field(default_factory=list)
    heard: list[bytes] = field(default_factory=list)
    unreachable: list[bytes] = field(default_factory=list)
    query_duration: float = 0.0


class QueryNetwork:
    """The local node's view of the network as seen by a lookup.

    This base keeps an in-memory routing table and a set of connected peers;
    subclasses override the hooks to talk to a real network.
    """

    def __init__(
        self,
        self_id: PeerLike,
        *,
        bucket_size: int = 20,
        alpha: int = 3,
        beta: int = 3,
        query_filter: Optional[PeerFilter] = None,
    ) -> None:
        for name, value in (("bucket_size", bucket_size), ("alpha", alpha), ("beta", beta)):
            if value <= 0:
                raise ValueError(f"{name} must be positive")
        self.self_id = _as_bytes(self_id)
        self.bucket_size = bucket_size
        self.alpha = alpha
        self.beta = beta
        self.query_filter = query_filter
        # peer -> wall-clock time it was last useful to a lookup, or None
        self.routing_table: dict[bytes, Optional[float]] = {}
        self.connected: set[bytes] = set()

    def nearest_peers(self, target: PeerLike, count: int) -> list[bytes]:
        """Return up to ``count`` routing-table peers closest to ``target``."""
        key = keyspace_key(_as_bytes(target))
        ranked = sorted(self.routing_table, key=lambda p: xor_distance(keyspace_key(p), key))
        return ranked[:count]

    async def dial_peer(self, peer: bytes) -> None:
        """Make sure a connection to ``peer`` exists; raise if it cannot be made."""
        if peer in self.connected:
            return
        if peer == self.self_id:
            raise ConnectionError("cannot dial self")
        self.connected.add(peer)

    def peer_found(self, peer: bytes) -> None:
        """Note that ``peer`` answered a query."""
        if peer != self.self_id:
            self.routing_table.setdefault(peer, None)

    def peer_stopped(self, peer: bytes) -> None:
        """Note that ``peer`` failed to answer and should be dropped."""
        self.routing_table.pop(peer, None)

    def mark_useful(self, peer: bytes) -> bool:
        """Record that ``peer`` was valuable; return False if it is not in the table."""
        if peer not in self.routing_table:
            return False
        self.routing_table[peer] = time.time()
        return True

    def accept_peer(self, peer: bytes) -> bool:
        """Decide whether a peer handed back by a remote may join the lookup."""
        return self.query_filter is None or bool(self.query_filter(peer))


class Lookup:
    """One Kademlia lookup towards ``target``."""

    def __init__(
        self,
        network: QueryNetwork,
        target: PeerLike,
        query_fn: QueryFn,
        stop_fn: Optional[StopFn] = None,
    ) -> None:
        self.network = network
        self.target = _as_bytes(target)
        self.query_fn = query_fn
        self.stop_fn = stop_fn or _never
        self.id = uuid.uuid4()
        self.seed_peers = list(network.nearest_peers(self.target, network.bucket_size))
        if not self.seed_peers:
            raise LookupFailure()
        self.peerset = QueryPeerset(self.target)
        self.peer_times: dict[bytes, float] = {}
        self.terminated = False
        self.termination_reason: Optional[TerminationReason] = None
        self._workers: set[asyncio.Task] = set()
        self._started = False

    async def run(self) -> LookupResult:
        """Run the lookup until it terminates and return its result."""
        if self._started:
            raise RuntimeError("a lookup can only be run once")
        self._started = True
        queue: asyncio.Queue[QueryUpdate] = asyncio.Queue()
        queue.put_nowait(QueryUpdate(cause=self.network.self_id, heard=list(self.seed_peers)))
        try:
            while True:
                update = await queue.get()
                self._update_state(update)
                capacity = self.network.alpha - self.peerset.num_waiting()
                reason, to_query = self._ready_to_terminate(capacity)
                if reason is not None:
                    self._terminate(reason)
                if self.terminated:
                    break
                for peer in to_query:
                    self._spawn_query(peer, queue)
        except asyncio.CancelledError:
            self._terminate(TerminationReason.CANCELLED)
            raise
        finally:
            await self._stop_workers()
        self._record_valuable_peers()
        return self.result()

    def result(self) -> LookupResult:
        """Return the top peers that are not unreachable and their current states."""
        completed = self._is_lookup_termination() or self._is_starvation_termination()
        peers = self.peerset.closest_n_in_states(
            self.network.bucket_size, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        states = [self.peerset.get_state(p) for p in peers]
        return LookupResult(peers=peers, states=states, completed=completed)

    def _spawn_query(self, peer: bytes, queue: "asyncio.Queue[QueryUpdate]") -> None:
        log.debug("querying %r (referred by %r)", peer, self.peerset.get_referrer(peer))
        self.peerset.set_state(peer, PeerState.WAITING)
        task = asyncio.create_task(self._query_peer(peer, queue))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _stop_workers(self) -> None:
        workers = list(self._workers)
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def _ready_to_terminate(
        self, capacity: int
    ) -> tuple[Optional[TerminationReason], list[bytes]]:
        if self.stop_fn():
            return TerminationReason.STOPPED, []
        if self._is_starvation_termination():
            return TerminationReason.STARVATION, []
        if self._is_lookup_termination():
            return TerminationReason.COMPLETED, []
        return None, self.peerset.closest_in_states(PeerState.HEARD)[: max(capacity, 0)]

    def _is_lookup_termination(self) -> bool:
        closest = self.peerset.closest_n_in_states(
            self.network.beta, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        return all(self.peerset.get_state(p) == PeerState.QUERIED for p in closest)

    def _is_starvation_termination(self) -> bool:
        return self.peerset.num_heard() == 0 and self.peerset.num_waiting() == 0

    def _terminate(self, reason: TerminationReason) -> None:
        if self.terminated:
            return
        log.debug("lookup %s terminated: %s", self.id, reason.value)
        self.termination_reason = reason
        self.terminated = True

    async def _query_peer(self, peer: bytes, queue: "asyncio.Queue[QueryUpdate]") -> None:
        network = self.network
        try:
            await network.dial_peer(peer)
        except Exception as err:
            log.debug("dialing %r failed: %s", peer, err)
            network.peer_stopped(peer)
            queue.put_nowait(QueryUpdate(cause=peer, unreachable=[peer]))
            return

        started = time.perf_counter()
        try:
            found = await self.query_fn(peer)
        except Exception as err:
            log.debug("query to %r failed: %s", peer, err)
            network.peer_stopped(peer)
            queue.put_nowait(QueryUpdate(cause=peer, unreachable=[peer]))
            return
        duration = time.perf_counter() - started

        network.peer_found(peer)

        heard = []
        for candidate in found or ():
            candidate = _as_bytes(candidate)
            if candidate == network.self_id:
                continue
            if candidate == self.target or network.accept_peer(candidate):
                heard.append(candidate)
        queue.put_nowait(
            QueryUpdate(cause=peer, heard=heard, queried=[peer], query_duration=duration)
        )

    def _update_state(self, update: QueryUpdate) -> None:
        if self.terminated:
            raise RuntimeError("update should not be applied after the lookup terminated")
        self_id = self.network.self_id
        for peer in update.heard:
            if peer != self_id:
                self.peerset.try_add(peer, update.cause)
        for peer in update.queried:
            if peer == self_id:
                continue
            state = self.peerset.get_state(peer)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    f"kademlia protocol error: tried to transition to the queried state from state {state.name}"
                )
            self.peerset.set_state(peer, PeerState.QUERIED)
            self.peer_times[peer] = update.query_duration
        for peer in update.unreachable:
            if peer == self_id:
                continue
            state = self.peerset.get_state(peer)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    f"kademlia protocol error: tried to transition to the unreachable state from state {state.name}"
                )
            self.peerset.set_state(peer, PeerState.UNREACHABLE)

    def _record_valuable_peers(self) -> None:
        # The fastest seed peer and every seed within twice its time are valuable.
        times = [self.peer_times[p] for p in self.seed_peers if p in self.peer_times]
        if not times:
            return
        fastest = min(times)
        for peer in self.seed_peers:
            duration = self.peer_times.get(peer)
            if duration is not None and duration < fastest * 2:
                self.network.mark_useful(peer)


async def run_query(
    network: QueryNetwork,
    target: PeerLike,
    query_fn: QueryFn,
    stop_fn: Optional[StopFn] = None,
) -> LookupResult:
    """Run a lookup from the peers nearest ``target`` in the routing table."""
    return await Lookup(network, target, query_fn, stop_fn).run()


async def _query_quietly(query_fn: QueryFn, peer: bytes) -> None:
    try:
        await query_fn(peer)
    except Exception as err:
        log.debug("follow-up query to %r failed: %s", peer, err)


async def run_lookup_with_followup(
    network: QueryNetwork,
    target: PeerLike,
    query_fn: QueryFn,
    stop_fn: Optional[StopFn] = None,
) -> LookupResult:
    """Run a lookup, then query every top peer that was heard of but not yet answered."""
    stop_fn = stop_fn or _never
    result = await run_query(network, target, query_fn, stop_fn)

    pending = [
        peer
        for peer, state in zip(result.peers, result.states)
        if state in (PeerState.HEARD, PeerState.WAITING)
    ]
    if not pending:
        return result
    if stop_fn():
        result.completed = False
        return result

    tasks = [asyncio.create_task(_query_quietly(query_fn, peer)) for peer in pending]
    try:
        for finished, next_done in enumerate(asyncio.as_completed(tasks), start=1):
            await next_done
            if stop_fn():
                if finished < len(tasks):
                    result.completed = False
                break
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    return result