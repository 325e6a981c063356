"""Periodic and on-demand refreshing of a Kademlia routing table."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

log = logging.getLogger(__name__)

PEER_PING_TIMEOUT = 10.0
"""Seconds allowed for a liveness ping before a peer is evicted."""

KeyLike = Union[bytes, str]


class _PeerInfo(Protocol):
    peer_id: bytes
    last_successful_outbound_query_at: float


class _RoutingTable(Protocol):
    def peer_infos(self) -> Iterable[_PeerInfo]: ...

    def remove_peer(self, peer: bytes) -> None: ...

    def tracked_cpls_for_refresh(self) -> list[Optional[float]]: ...

    def n_peers_for_cpl(self, cpl: int) -> int: ...

    def size(self) -> int: ...


def loggable_raw_key(key: KeyLike) -> str:
    """Render a raw key as unpadded base32 for logging; empty stays empty."""
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not raw:
        return ""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


class RefreshError(Exception):
    """One or more parts of a routing-table refresh failed."""

    def __init__(self, *errors: str) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass
class _Request:
    force: bool
    future: Optional["asyncio.Future[None]"]


class RefreshManager:
    """Keeps the routing table fresh by querying for keys in each bucket.

    ``connect`` is awaited to ping a peer and raises if it is unreachable.
    ``key_gen(cpl)`` returns a key with that common prefix length;
    ``query_fn(key)`` is awaited to run a lookup for it. Times are in seconds.
    """

    def __init__(
        self,
        self_id: bytes,
        routing_table: _RoutingTable,
        connect: Callable[[bytes], Awaitable[Any]],
        auto_refresh: bool,
        key_gen: Callable[[int], KeyLike],
        query_fn: Callable[[KeyLike], Awaitable[Any]],
        query_timeout: Optional[float],
        refresh_interval: float,
        grace_period: float,
        on_refresh_done: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.self_id = self_id
        self.routing_table = routing_table
        self.connect = connect
        self.auto_refresh = auto_refresh
        self.key_gen = key_gen
        self.query_fn = query_fn
        self.query_timeout = query_timeout
        self.refresh_interval = refresh_interval
        self.grace_period = grace_period
        self.on_refresh_done = on_refresh_done
        self._pending: list[_Request] = []
        self._wakeup = asyncio.Event()
        self._idle = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "RefreshManager":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Start the refresh loop on the running event loop."""
        if self._task is not None:
            raise RuntimeError("refresh manager already started")
        if self._closed:
            raise RuntimeError("refresh manager is closed")
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def close(self) -> None:
        """Stop the refresh loop and fail any refresh still waiting. Idempotent."""
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        pending, self._pending = self._pending, []
        for request in pending:
            if request.future is not None and not request.future.done():
                request.future.set_exception(RefreshError("refresh manager is closed"))

    def refresh(self, force: bool) -> "asyncio.Future[None]":
        """Ask for a refresh; the returned future resolves when it has run.

        With ``force`` every bucket is refreshed whenever it was last refreshed.
        The future raises :class:`RefreshError` if the refresh failed.
        """
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(RefreshError("refresh manager is closed"))
            return future
        self._pending.append(_Request(force=force, future=future))
        self._wakeup.set()
        return future

    def refresh_no_wait(self) -> None:
        """Ask for a refresh only if the loop is idle right now; never blocks."""
        if self._closed or not self._idle:
            return
        self._pending.append(_Request(force=False, future=None))
        self._wakeup.set()

    async def _loop(self) -> None:
        next_tick: Optional[float] = None
        if self.auto_refresh:
            try:
                await self.do_refresh(True)
            except RefreshError as err:
                log.warning("failed when refreshing routing table: %s", err)
            next_tick = time.monotonic() + self.refresh_interval

        while True:
            self._idle = True
            try:
                if self._pending:
                    self._wakeup.set()
                timeout = None if next_tick is None else max(0.0, next_tick - time.monotonic())
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout)
                except asyncio.TimeoutError:
                    assert next_tick is not None
                    next_tick += self.refresh_interval
            finally:
                self._idle = False
            self._wakeup.clear()

            # batch every request that arrived while we were waiting
            requests, self._pending = self._pending, []
            forced = any(r.force for r in requests)

            await self._evict_stale_peers()

            error: Optional[RefreshError] = None
            try:
                await self.do_refresh(forced)
            except RefreshError as err:
                error = err
                log.warning("failed when refreshing routing table: %s", err)
            for request in requests:
                if request.future is None or request.future.done():
                    continue
                if error is None:
                    request.future.set_result(None)
                else:
                    request.future.set_exception(RefreshError(*error.errors))

    async def _evict_stale_peers(self) -> None:
        now = time.time()
        stale = [
            info.peer_id
            for info in self.routing_table.peer_infos()
            if now - info.last_successful_outbound_query_at > self.grace_period
        ]
        if stale:
            await asyncio.gather(*(self._ping_or_evict(peer) for peer in stale))

    async def _ping_or_evict(self, peer: bytes) -> None:
        try:
            await asyncio.wait_for(self.connect(peer), PEER_PING_TIMEOUT)
        except Exception as err:
            log.debug("evicting peer %r after failed ping: %s", peer, err)
            self.routing_table.remove_peer(peer)

    async def do_refresh(self, force: bool) -> None:
        """Query for ourselves, then refresh the tracked buckets.

        Raises :class:`RefreshError` collecting every failure.
        """
        errors: list[str] = []
        try:
            await self._query_for_self()
        except RefreshError as err:
            errors.extend(err.errors)

        tracked = list(self.routing_table.tracked_cpls_for_refresh())

        async def refresh_one(cpl: int) -> bool:
            try:
                if force:
                    await self._refresh_cpl(cpl)
                else:
                    await self._refresh_cpl_if_eligible(cpl, tracked[cpl])
            except RefreshError as err:
                errors.extend(err.errors)
                return False
            return True

        for cpl in range(len(tracked)):
            if not await refresh_one(cpl):
                continue
            if self.routing_table.n_peers_for_cpl(cpl) == 0:
                # Past a gap, refresh only up to 2 * (cpl + 1) or the highest tracked cpl.
                last = min(2 * (cpl + 1), len(tracked) - 1)
                for following in range(cpl + 1, last + 1):
                    await refresh_one(following)
                if errors:
                    raise RefreshError(*errors)
                return

        if self._closed:
            raise RefreshError("refresh manager is closed")
        if self.on_refresh_done is not None:
            self.on_refresh_done()
        if errors:
            raise RefreshError(*errors)

    async def _refresh_cpl_if_eligible(self, cpl: int, last_refreshed_at: Optional[float]) -> None:
        if last_refreshed_at is not None and time.time() - last_refreshed_at <= self.refresh_interval:
            log.debug("not running refresh for cpl %d as time since last refresh not above interval", cpl)
            return
        await self._refresh_cpl(cpl)

    async def _refresh_cpl(self, cpl: int) -> None:
        try:
            key = self.key_gen(cpl)
        except Exception as err:
            raise RefreshError(f"failed to generated query key for cpl={cpl}, err={err}") from err
        log.info(
            "starting refreshing cpl %d with key %s (routing table size was %d)",
            cpl,
            loggable_raw_key(key),
            self.routing_table.size(),
        )
        try:
            await self._run_refresh_query(key)
        except Exception as err:
            raise RefreshError(f"failed to refresh cpl={cpl}, err={err}") from err
        log.info("finished refreshing cpl %d, routing table size is now %d", cpl, self.routing_table.size())

    async def _query_for_self(self) -> None:
        try:
            await self._run_refresh_query(self.self_id)
        except Exception as err:
            raise RefreshError(f"failed to query for self, err={err}") from err

    async def _run_refresh_query(self, key: KeyLike) -> None:
        task = asyncio.ensure_future(self.query_fn(key))
        done, _ = await asyncio.wait({task}, timeout=self.query_timeout)
        if not done:
            # running out of time is an acceptable end to a refresh query
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
            return
        task.result()