import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass

import pytest

from kadlookup.rtrefresh import RefreshError, RefreshManager, loggable_raw_key

LOCAL = b"local-peer"


@dataclass
class Info:
    peer_id: bytes
    last_successful_outbound_query_at: float


class FakeTable:
    def __init__(self, tracked=None):
        self.by_cpl = defaultdict(list)
        self.infos = []
        self.removed = []
        self.queried = []
        self.tracked = tracked

    def add(self, cpl):
        self.by_cpl[cpl].append(f"peer-{cpl}-{len(self.by_cpl[cpl])}".encode())

    def tracked_cpls_for_refresh(self):
        if self.tracked is not None:
            return list(self.tracked)
        populated = [c for c, peers in self.by_cpl.items() if peers]
        top = min(max(populated, default=0), 15)
        return [None] * (top + 1)

    def n_peers_for_cpl(self, cpl):
        return len(self.by_cpl.get(cpl, []))

    def size(self):
        return sum(len(p) for p in self.by_cpl.values())

    def peer_infos(self):
        return list(self.infos)

    def remove_peer(self, peer):
        self.infos = [i for i in self.infos if i.peer_id != peer]
        self.removed.append(peer)


async def _connect_ok(peer):
    return None


async def _connect_fail(peer):
    raise ConnectionError("unreachable")


def _make(table, query_fn, key_gen=str, connect=_connect_ok, auto=False,
          timeout=5.0, interval=100.0, grace=50.0, done=None):
    return RefreshManager(LOCAL, table, connect, auto, key_gen, query_fn,
                          timeout, interval, grace, done)


def _query_with_ignore(table, ignore_cpl):
    async def query(key):
        if key == LOCAL:
            return
        cpl = int(key)
        if cpl == ignore_cpl:
            return
        table.add(cpl)
    return query


def _recording_query(table, populate=False):
    async def query(key):
        table.queried.append(key)
        if populate and key != LOCAL:
            table.add(int(key))
    return query


@pytest.mark.asyncio
async def test_skip_refresh_on_gap_below_max():
    table = FakeTable()
    table.add(10)
    done = []
    manager = _make(table, _query_with_ignore(table, 2), done=lambda: done.append(1))
    await manager.do_refresh(True)

    ignore, last = 2, 2 * (2 + 1)
    for cpl in range(last + 1):
        expected = 0 if cpl == ignore else 1
        assert table.n_peers_for_cpl(cpl) == expected
    for cpl in range(last + 1, 10):
        assert table.n_peers_for_cpl(cpl) == 0
    assert done == []


@pytest.mark.asyncio
async def test_skip_refresh_on_gap_beyond_max():
    table = FakeTable()
    table.add(10)
    manager = _make(table, _query_with_ignore(table, 6))
    await manager.do_refresh(True)

    for cpl in range(10):
        expected = 0 if cpl == 6 else 1
        assert table.n_peers_for_cpl(cpl) == expected
    assert table.n_peers_for_cpl(10) == 2


@pytest.mark.asyncio
async def test_full_refresh_signals_done():
    table = FakeTable()
    table.add(3)
    done = []
    manager = _make(table, _query_with_ignore(table, -1), done=lambda: done.append(1))
    await manager.do_refresh(True)
    assert done == [1]
    assert [table.n_peers_for_cpl(c) for c in range(4)] == [1, 1, 1, 2]


def test_loggable_raw_key():
    assert loggable_raw_key("") == ""
    assert loggable_raw_key(b"hello") == "NBSWY3DP"
    assert loggable_raw_key("hello") == "NBSWY3DP"


@pytest.mark.asyncio
async def test_query_failure_is_reported():
    table = FakeTable(tracked=[])

    async def failing(key):
        raise OSError("boom")

    manager = _make(table, failing)
    with pytest.raises(RefreshError) as info:
        await manager.do_refresh(True)
    assert info.value.errors == ["failed to query for self, err=boom"]


@pytest.mark.asyncio
async def test_key_generation_failure_is_reported():
    table = FakeTable()
    table.add(0)

    def bad_key(cpl):
        raise ValueError("no key")

    async def query(key):
        return None

    manager = _make(table, query, key_gen=bad_key)
    with pytest.raises(RefreshError) as info:
        await manager.do_refresh(True)
    assert info.value.errors == ["failed to generated query key for cpl=0, err=no key"]


@pytest.mark.asyncio
async def test_timeout_counts_as_success():
    table = FakeTable(tracked=[])
    calls = []

    async def slow(key):
        calls.append(key)
        await asyncio.sleep(10)

    done = []
    manager = _make(table, slow, timeout=0.01, done=lambda: done.append(1))
    await manager.do_refresh(True)
    assert calls == [LOCAL]
    assert done == [1]


@pytest.mark.asyncio
async def test_unforced_refresh_skips_recent_buckets():
    now = time.time()
    table = FakeTable(tracked=[now, now - 1000])
    table.add(0)
    table.add(1)

    manager = _make(table, _recording_query(table, populate=True), interval=100.0)
    await manager.do_refresh(False)
    assert table.queried == [LOCAL, "1"]
    assert table.n_peers_for_cpl(0) == 1
    assert table.n_peers_for_cpl(1) == 2


@pytest.mark.asyncio
async def test_refresh_evicts_unreachable_stale_peers():
    table = FakeTable(tracked=[])
    now = time.time()
    table.infos = [Info(b"stale", now - 100), Info(b"fresh", now)]
    keys = []

    async def query(key):
        keys.append(key)

    manager = _make(table, query, connect=_connect_fail, grace=50.0)
    manager.start()
    try:
        await asyncio.wait_for(manager.refresh(True), 2)
    finally:
        await manager.close()
    assert table.removed == [b"stale"]
    assert keys == [LOCAL]


@pytest.mark.asyncio
async def test_refresh_keeps_reachable_stale_peers():
    table = FakeTable(tracked=[])
    table.infos = [Info(b"stale", time.time() - 100)]

    async def query(key):
        return None

    async with _make(table, query, connect=_connect_ok) as manager:
        await asyncio.wait_for(manager.refresh(False), 2)
    assert table.removed == []


@pytest.mark.asyncio
async def test_refresh_future_carries_failure():
    table = FakeTable(tracked=[])

    async def failing(key):
        raise OSError("down")

    async with _make(table, failing) as manager:
        with pytest.raises(RefreshError) as info:
            await asyncio.wait_for(manager.refresh(True), 2)
    assert info.value.errors == ["failed to query for self, err=down"]


@pytest.mark.asyncio
async def test_refresh_after_close_fails():
    table = FakeTable(tracked=[])

    async def query(key):
        return None

    manager = _make(table, query)
    manager.start()
    await manager.close()
    with pytest.raises(RefreshError):
        await manager.refresh(True)


@pytest.mark.asyncio
async def test_refresh_no_wait_only_when_idle():
    table = FakeTable(tracked=[])

    manager = _make(table, _recording_query(table))
    manager.refresh_no_wait()  # not started: dropped
    manager.start()
    try:
        for _ in range(5):
            await asyncio.sleep(0)
        manager.refresh_no_wait()
        for _ in range(100):
            if table.queried:
                break
            await asyncio.sleep(0.01)
    finally:
        await manager.close()
    assert table.queried == [LOCAL]


@pytest.mark.asyncio
async def test_auto_refresh_runs_forced_refresh_on_start():
    table = FakeTable()
    table.add(1)

    manager = _make(table, _recording_query(table), auto=True, interval=3600.0)
    manager.start()
    try:
        for _ in range(100):
            if len(table.queried) >= 3:
                break
            await asyncio.sleep(0.01)
    finally:
        await manager.close()
    assert table.queried == [LOCAL, "0", "1"]