# natstier

`natstier` keeps track of message blocks that live across storage tiers —
memory, local file and blob storage — and serves them back on request.
It needs nothing beyond the Python standard library (3.10 or later).

It provides:

- **Metadata store** (`natstier.meta`): a transactional record of every
  block, indexed by first sequence and first timestamp, with per-stream
  consumer state, a key/value index (latest entry and every revision of each
  key) and an object index (object metadata plus the chunk sequences that
  make up each object). Databases at schema version 1 are migrated to
  version 2 when opened.
- **Memory tier** (`natstier.memory`): an in-process block cache bounded by
  block count and/or total bytes, evicting the oldest block first.
- **Lifecycle** (`natstier.lifecycle`): a retention cycle that permanently
  removes blocks older than the blob tier's maximum age, and a helper that
  removes metadata for blocks that no longer exist in any tier.
- **Health probes** (`natstier.metrics.health`): liveness and readiness
  checks served as JSON over HTTP.
- **Serving** (`natstier.serve`): a WSGI HTTP API for streams, blocks,
  messages, key/value buckets and object stores, and request/reply
  responders for `nts.get.*`, `nts.kv.*` and `nts.obj.*` subjects.

## Tiers

`natstier.meta.schema.Tier` orders tiers from hot to cold: `MEMORY`, `FILE`,
`BLOB`. A block may be held by several tiers at once;
`BlockEntry.effective_tiers()` lists them hottest first, falling back to the
single `current_tier` for entries recorded without a tier list.

## Recording and finding blocks

`BoltStore(path)` keeps its data in a single file, rewritten atomically on
every committed change; with no path it stays in memory.

```python
from datetime import datetime, timezone

from natstier.meta.schema import BlockEntry, Tier
from natstier.meta.store import BoltStore

with BoltStore("meta.db") as store:
    now = datetime.now(timezone.utc)
    store.record_block(BlockEntry(
        stream="ORDERS",
        block_id=1,
        first_seq=100,
        last_seq=200,
        first_ts=now,
        last_ts=now,
        msg_count=101,
        size_bytes=1024,
        current_tier=Tier.MEMORY,
        tiers=[Tier.MEMORY, Tier.FILE],
        created_at=now,
    ))

    entry = store.lookup_by_sequence("ORDERS", 150)          # block holding seq 150
    store.update_tier("ORDERS", 1, Tier.MEMORY, Tier.FILE)   # drop the memory copy
    store.add_tier_presence("ORDERS", 1, Tier.MEMORY)        # record it back
    file_blocks = store.list_blocks("ORDERS", Tier.FILE)

    store.set_consumer_state("ORDERS", 500)
    assert store.get_consumer_state("ORDERS") == 500
```

Also available: `lookup_by_sequence_range`, `lookup_by_time_range`,
`get_block`, `update_s3_key`, `delete_block` and `ping`.

Lookups of unknown streams, blocks, keys or objects raise
`natstier.meta.schema.NotFoundError`; listing an unknown stream returns an
empty list, and deleting a missing block does nothing.

## Key/value and object indexes

```python
from natstier.meta.kv_index import KVKeyEntry, KVRevEntry
from natstier.meta.obj_index import ObjChunkSet, ObjEntry

store.record_kv_key("KV_config", KVKeyEntry(bucket="config", key="app.port",
                                            last_sequence=10, operation="PUT"))
store.record_kv_revision("KV_config", "app.port", KVRevEntry(sequence=10, block_id=1))
latest = store.lookup_kv_key("KV_config", "app.port")
revisions = store.list_kv_key_revisions("KV_config", "app.port")  # sorted by sequence
keys = store.list_kv_keys("KV_config", "app.")                    # prefix scan, key order

store.record_obj_meta("OBJ_files", ObjEntry(bucket="files", name="report.pdf", nuid="abc123"))
store.record_obj_chunks("OBJ_files", ObjChunkSet(
    nuid="abc123", chunk_seqs=[101, 102], chunk_blocks=[1, 1], total_size=2048,
))
chunks = store.lookup_obj_chunks("OBJ_files", "abc123")
objects = store.list_objects("OBJ_files")
```

Chunk sets recorded again for the same NUID are appended to the existing
set, keeping chunk order and adding up the total size.

## Memory tier

`natstier.memory.store.MemoryStore(MemoryTierConfig(max_bytes=..., max_blocks=...))`
evicts the oldest block first once either limit would be exceeded (zero
means no limit). Putting a block ID that is already cached does nothing.
`get_message(ref, seq)` returns a `StoredMessage` whose headers are parsed
into a mapping of lists; `stats()` returns a `TierStats`.

Blocks are not constructed by this package: any object with `stream`,
`size_bytes`, `messages` and an `index` offering `lookup(seq)` can be
stored.

## Retention

`natstier.lifecycle.manager.Manager(ctrl, meta_store, stream,
blob_enabled=..., blob_max_age=...)`: `gc_cycle()` deletes, from every tier
holding it (through `ctrl.delete_from_tier(ref, tier)`) and from the
metadata store, each blob-tier block whose last timestamp is older than the
maximum age. A maximum age of zero keeps blocks forever, and nothing is
removed while the blob tier is disabled. The coroutine `run(interval)`
repeats the cycle every interval until its task is cancelled.

`natstier.lifecycle.gc.collect_orphans(meta_store, ctrl, stream)` removes
metadata for blocks found in none of their recorded tiers (stores come from
`ctrl.store_for_tier(tier)`) and returns how many were removed.

## Health probes

`HealthChecker(nats_conn, meta_store, s3_client)`: `liveness()` always
reports OK; `readiness()` checks the connection's `is_connected` and calls
`ping()` on the metadata store and object-storage client, whichever are
given, reporting each as a `Check`. `build_health_handler` returns a WSGI
application answering 200 or 503 with a JSON body, and `run_health_server`
serves it (on `/healthz` and `/readyz` by default) until its stop event is
set.

## HTTP API

`natstier.serve.api.ApiHandler(pipelines, meta_store, kv_buckets=...,
obj_buckets=..., jetstream=...)` is a WSGI application;
`run_http(handler, listen, stop)` serves it on `"host:port"`. Each pipeline
has a `stream` name and a `controller` with `retrieve`, `retrieve_range`,
`demote` and `promote`; `kv_buckets` and `obj_buckets` map bucket names to
the streams that back them. `dispatch(method, path, query)` answers a
request without a server and returns a `Response`.

| Method | Path | Purpose |
| --- | --- | --- |
| GET | `/v1/status` | service status |
| GET | `/v1/streams` | block counts per tier for each stream |
| GET | `/v1/streams/{stream}/stats` | blocks and bytes per tier |
| GET | `/v1/messages/{stream}/{seq}` | one message |
| GET | `/v1/messages/{stream}?start=&count=` | a range of messages (count defaults to 100) |
| GET | `/v1/blocks/{stream}` | block list |
| GET | `/v1/blocks/{stream}/{blockID}` | one block's metadata |
| POST | `/v1/admin/demote/{stream}/{blockID}` | evict a block from its hottest tier |
| POST | `/v1/admin/promote/{stream}/{blockID}` | copy a block one tier hotter |
| GET | `/v1/kv/{bucket}/get/{key}` | latest value of a key |
| GET | `/v1/kv/{bucket}/history/{key}` | every stored revision of a key |
| GET | `/v1/kv/{bucket}/keys?prefix=` | live keys (deleted and purged keys left out) |
| POST | `/v1/kv/{bucket}/restore/{key}` | write a key's stored value back to the live bucket |
| GET | `/v1/objects/{bucket}/get/{name}` | object bytes, reassembled from chunks |
| GET | `/v1/objects/{bucket}/info/{name}` | object metadata |
| GET | `/v1/objects/{bucket}/list` | object list |

Errors are JSON objects of the form `{"error": "..."}` with 400, 404, 410 or
500 as the status; unknown paths give a plain 404 and a wrong method 405.

## Request/reply responders

`GetResponder`, `KVResponder` and `ObjResponder` answer subjects of the
forms

- `nts.get.{stream}.{sequence}`
- `nts.kv.{bucket}.get|history|restore.{key}` and `nts.kv.{bucket}.keys[.{prefix}]`
- `nts.obj.{bucket}.get|info.{name}` and `nts.obj.{bucket}.list`

Each `handle(subject)` returns the reply payload as bytes. `serve(conn)`
calls `conn.subscribe(subject, callback)` and returns the subscription; the
KV and Object Store responders do not subscribe when no bucket is
configured. Objects larger than 1 MiB are refused on this path in favour of
the HTTP API.

## What this package does not do

- It does not expose Prometheus metrics; there are no counters, gauges or
  metrics endpoint.
- It has no tier controller, no file or blob (S3) tier stores and no ingest
  pipeline; the lifecycle, API and responder classes work with objects you
  supply that offer the methods described above.
- It does not connect to a message bus itself; responders and the restore
  routes use connection and JetStream objects you pass in.
- It installs no command-line program.