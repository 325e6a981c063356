# kadlookup

Building blocks for a Kademlia distributed hash table, written for asyncio.

## Modules

- `kadlookup.qpeerset`: `QueryPeerset` is the set of peers known to one
  lookup. Each peer carries a `PeerState` (`HEARD`, `WAITING`, `QUERIED`,
  `UNREACHABLE`) and the peer that referred it. Peers are ordered by XOR
  distance between SHA-256 digests (`keyspace_key`, `xor_distance`,
  `closer`).
- `kadlookup.query`: the lookup engine. `run_query` runs a concurrent lookup
  over a `QueryNetwork`, with at most `alpha` queries outstanding at once. It
  ends when the `beta` closest live peers have all been queried, when no peers
  are left to query, or when the stop function returns true. The result is a
  `LookupResult` that holds up to `bucket_size` peers, their states and a
  `completed` flag. `run_lookup_with_followup` then queries every top peer that
  was heard of but not yet answered. A lookup whose routing table has no seed
  peers raises `LookupFailure`. The base `QueryNetwork` keeps an in-memory
  routing table and set of connected peers. Subclass it and override
  `dial_peer`, `peer_found`, `peer_stopped`, `mark_useful`, `accept_peer` and
  `nearest_peers` to connect it to a real network.
- `kadlookup.options`: `RoutingOptions` and the `quorum(n)` option. A quorum
  of 0 means "run the query to completion".
- `kadlookup.providers`: `ProviderManager` stores provider records in a
  datastore and caches provider sets in an LRU cache. The bundled in-memory
  datastore is `MapDatastore`. Records older than `PROVIDE_VALIDITY` are
  removed when they are read and by `collect_garbage`. A background thread
  calls `collect_garbage` every `cleanup_interval` seconds until `close()`.
  Pass `cleanup_interval=None` to turn the thread off. Timestamps are stored
  as zig-zag varints (`encode_time_value`, `read_time_value`).
- `kadlookup.diversity`: `RTPeerIPGroupFilter` limits how many routing table
  peers may share an IP group. The limit applies per common prefix length
  (`max_per_cpl`) and for the whole table (`max_for_table`).
- `kadlookup.rtrefresh`: `RefreshManager` refreshes a routing table. It runs
  on a timer when `auto_refresh` is set, and on request through `refresh(force)`
  or `refresh_no_wait()`. Each round pings peers whose last successful query is
  older than the grace period and evicts those that do not answer. It then
  queries for its own id and for a generated key in each tracked bucket.
  Failures are collected into a `RefreshError`.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Example: tracking a lookup

```python
from kadlookup.qpeerset import PeerState, QueryPeerset

peers = QueryPeerset("target-key")
peers.try_add(b"peer-a", b"seed")
peers.try_add(b"peer-b", b"seed")
peers.set_state(b"peer-a", PeerState.WAITING)

print(peers.closest_in_states(PeerState.HEARD))  # [b"peer-b"]
print(peers.num_waiting())                       # 1
```

## Example: running a lookup

```python
import asyncio

from kadlookup.query import QueryNetwork, run_query

network = QueryNetwork(b"me", alpha=3, beta=3)
network.peer_found(b"a")
network.peer_found(b"b")

async def ask(peer):
    # Return the peers this peer knows of that are closer to the target.
    return [b"c"] if peer == b"a" else []

result = asyncio.run(run_query(network, b"target", ask))
print(result.peers, result.states, result.completed)
```

## Example: provider records

```python
from kadlookup.providers import MapDatastore, ProviderManager

with ProviderManager(b"me", MapDatastore()) as manager:
    manager.add_provider(b"content-hash", b"provider-1")
    print(manager.get_providers(b"content-hash"))  # [b"provider-1"]
```

## Example: IP group diversity

```python
from kadlookup.diversity import PeerGroupInfo, RTPeerIPGroupFilter

def connections(peer):
    return ["/ip4/10.0.0.1/tcp/4001"]

limiter = RTPeerIPGroupFilter(connections, max_per_cpl=2, max_for_table=3)
group = PeerGroupInfo(cpl=1, ip_group_key="10.0.0.0/16")
if limiter.allow(group):
    limiter.increment(group)
```

## What this package does not do

kadlookup contains no network transport, wire protocol or message encoding.
Queries, dials and pings are callables or `QueryNetwork` hooks that you
supply. There is no k-bucket routing table: `RefreshManager` works with a
routing table object you provide, and the base `QueryNetwork` keeps only a
flat dictionary. Values are not stored or published. The only datastore is the
in-memory `MapDatastore`, and nothing is persisted to disk. There is no
command-line tool and no server.