"""Durable metadata tracking for blocks across all tiers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .buckets import Bucket, BucketDB, PathLike
from .kv_index import KVIndexMixin
from .migrations import MigrationMixin
from .obj_index import ObjIndexMixin
from .schema import (
    BUCKET_SYSTEM,
    CURRENT_SCHEMA_VERSION,
    KEY_LAST_ACKED_SEQ,
    KEY_LAST_ACKED_TS,
    KEY_SCHEMA_VERSION,
    SUB_BUCKET_BLOCKS,
    SUB_BUCKET_CONSUMER,
    SUB_BUCKET_SEQ_INDEX,
    SUB_BUCKET_TIME_INDEX,
    BlockEntry,
    NotFoundError,
    Tier,
    bytes_to_uint64,
    ensure_stream_buckets,
    get_stream_bucket,
    int64_to_bytes,
    uint64_to_bytes,
)

import json

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _unix_nano(moment: datetime) -> int:
    """Nanoseconds since the Unix epoch; naive datetimes are taken as local time."""
    if moment.tzinfo is None:
        moment = moment.astimezone(timezone.utc)
    delta = moment - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


def _encode_block_entry(entry: BlockEntry) -> bytes:
    return json.dumps(entry.to_dict()).encode("utf-8")


def _decode_block_entry(data: bytes) -> BlockEntry:
    return BlockEntry.from_dict(json.loads(data))


class BoltStore(KVIndexMixin, ObjIndexMixin, MigrationMixin):
    """Metadata store kept in a nested-bucket database file."""

    def __init__(self, path: Optional[PathLike] = None, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.db = BucketDB(path)
        try:
            self._init_schema()
        except Exception:
            self.db.close()
            raise

    def _init_schema(self) -> None:
        with self.db.update() as tx:
            system = tx.create_bucket_if_not_exists(BUCKET_SYSTEM)
            if system.get(KEY_SCHEMA_VERSION) is None:
                system.put(KEY_SCHEMA_VERSION, uint64_to_bytes(CURRENT_SCHEMA_VERSION))
        self.migrate()

    def __enter__(self) -> "BoltStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _stream_bucket(tx, stream: str) -> Bucket:
        stream_bucket = get_stream_bucket(tx, stream)
        if stream_bucket is None:
            raise NotFoundError(f'stream "{stream}" not found')
        return stream_bucket

    @staticmethod
    def _load_block(blocks: Bucket, stream: str, block_id: int) -> BlockEntry:
        raw = blocks.get(uint64_to_bytes(block_id))
        if raw is None:
            raise NotFoundError(f'block {block_id} not found in stream "{stream}"')
        return _decode_block_entry(raw)

    def record_block(self, entry: BlockEntry) -> None:
        with self.db.update() as tx:
            stream_bucket = ensure_stream_buckets(tx, entry.stream)
            block_key = uint64_to_bytes(entry.block_id)
            stream_bucket.bucket(SUB_BUCKET_BLOCKS).put(block_key, _encode_block_entry(entry))
            stream_bucket.bucket(SUB_BUCKET_SEQ_INDEX).put(uint64_to_bytes(entry.first_seq), block_key)
            stream_bucket.bucket(SUB_BUCKET_TIME_INDEX).put(
                int64_to_bytes(_unix_nano(entry.first_ts)), block_key
            )

    def update_tier(self, stream: str, block_id: int, from_tier: Tier, to_tier: Tier) -> None:
        """Remove from_tier from the block's tiers (write-through eviction)."""
        with self.db.update() as tx:
            blocks = self._stream_bucket(tx, stream).bucket(SUB_BUCKET_BLOCKS)
            entry = self._load_block(blocks, stream, block_id)
            remaining = [t for t in entry.effective_tiers() if t != from_tier]
            entry.tiers = remaining
            if remaining:
                entry.current_tier = remaining[0]
            entry.demoted_at = datetime.now(timezone.utc)
            blocks.put(uint64_to_bytes(block_id), _encode_block_entry(entry))

    def add_tier_presence(self, stream: str, block_id: int, tier: Tier) -> None:
        """Record that the block is also held in tier, keeping hot-to-cold order."""
        with self.db.update() as tx:
            blocks = self._stream_bucket(tx, stream).bucket(SUB_BUCKET_BLOCKS)
            entry = self._load_block(blocks, stream, block_id)
            tiers = entry.effective_tiers()
            if tier in tiers:
                return
            entry.tiers = sorted(tiers + [Tier(tier)])
            entry.current_tier = entry.tiers[0]
            blocks.put(uint64_to_bytes(block_id), _encode_block_entry(entry))

    def update_s3_key(self, stream: str, block_id: int, s3_key: str) -> None:
        with self.db.update() as tx:
            blocks = self._stream_bucket(tx, stream).bucket(SUB_BUCKET_BLOCKS)
            raw = blocks.get(uint64_to_bytes(block_id))
            if raw is None:
                raise NotFoundError(f"block {block_id} not found")
            entry = _decode_block_entry(raw)
            entry.s3_key = s3_key
            blocks.put(uint64_to_bytes(block_id), _encode_block_entry(entry))

    def lookup_by_sequence(self, stream: str, seq: int) -> BlockEntry:
        """The block with the largest first sequence not above seq."""
        with self.db.view() as tx:
            stream_bucket = self._stream_bucket(tx, stream)
            found = stream_bucket.bucket(SUB_BUCKET_SEQ_INDEX).floor(uint64_to_bytes(seq))
            if found is None:
                raise NotFoundError(f'sequence {seq} not found in stream "{stream}"')
            block_id = bytes_to_uint64(found[1])
            return self._load_block(stream_bucket.bucket(SUB_BUCKET_BLOCKS), stream, block_id)

    def lookup_by_sequence_range(self, stream: str, start_seq: int, end_seq: int) -> list[BlockEntry]:
        """Blocks overlapping the inclusive sequence range, in sequence order."""
        with self.db.view() as tx:
            stream_bucket = self._stream_bucket(tx, stream)
            seq_index = stream_bucket.bucket(SUB_BUCKET_SEQ_INDEX)
            blocks = stream_bucket.bucket(SUB_BUCKET_BLOCKS)

            floor = seq_index.floor(uint64_to_bytes(start_seq))
            start_key = floor[0] if floor is not None else uint64_to_bytes(start_seq)

            entries: list[BlockEntry] = []
            seen: set[int] = set()
            for _, value in seq_index.items(start_key):
                block_id = bytes_to_uint64(value)
                if block_id in seen:
                    continue
                raw = blocks.get(uint64_to_bytes(block_id))
                if raw is None:
                    continue
                entry = _decode_block_entry(raw)
                if entry.first_seq <= end_seq and entry.last_seq >= start_seq:
                    entries.append(entry)
                    seen.add(block_id)
                if entry.first_seq > end_seq:
                    break
            return entries

    def lookup_by_time_range(self, stream: str, start: datetime, end: datetime) -> list[BlockEntry]:
        """Blocks whose first timestamp lies within [start, end], in time order."""
        end_ns = _unix_nano(end)
        with self.db.view() as tx:
            stream_bucket = self._stream_bucket(tx, stream)
            time_index = stream_bucket.bucket(SUB_BUCKET_TIME_INDEX)
            blocks = stream_bucket.bucket(SUB_BUCKET_BLOCKS)

            entries: list[BlockEntry] = []
            for _, value in time_index.items(int64_to_bytes(_unix_nano(start))):
                raw = blocks.get(value)
                if raw is None:
                    continue
                entry = _decode_block_entry(raw)
                if _unix_nano(entry.first_ts) > end_ns:
                    break
                entries.append(entry)
            return entries

    def list_blocks(self, stream: str, tier_filter: Optional[Tier] = None) -> list[BlockEntry]:
        """All blocks of a stream in block-ID order, optionally only those held in a tier."""
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                return []
            entries = (_decode_block_entry(v) for _, v in stream_bucket.bucket(SUB_BUCKET_BLOCKS).items())
            if tier_filter is None:
                return list(entries)
            return [e for e in entries if tier_filter in e.effective_tiers()]

    def get_block(self, stream: str, block_id: int) -> BlockEntry:
        with self.db.view() as tx:
            blocks = self._stream_bucket(tx, stream).bucket(SUB_BUCKET_BLOCKS)
            raw = blocks.get(uint64_to_bytes(block_id))
            if raw is None:
                raise NotFoundError(f"block {block_id} not found")
            return _decode_block_entry(raw)

    def delete_block(self, stream: str, block_id: int) -> None:
        """Remove a block and its index entries; a missing block is not an error."""
        with self.db.update() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                return
            blocks = stream_bucket.bucket(SUB_BUCKET_BLOCKS)
            raw = blocks.get(uint64_to_bytes(block_id))
            if raw is None:
                return
            entry = _decode_block_entry(raw)
            blocks.delete(uint64_to_bytes(block_id))
            stream_bucket.bucket(SUB_BUCKET_SEQ_INDEX).delete(uint64_to_bytes(entry.first_seq))
            stream_bucket.bucket(SUB_BUCKET_TIME_INDEX).delete(int64_to_bytes(_unix_nano(entry.first_ts)))

    def get_consumer_state(self, stream: str) -> int:
        """Last acknowledged sequence, or 0 when none is recorded."""
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                return 0
            consumer = stream_bucket.bucket(SUB_BUCKET_CONSUMER)
            if consumer is None:
                return 0
            raw = consumer.get(KEY_LAST_ACKED_SEQ)
            return bytes_to_uint64(raw) if raw is not None else 0

    def set_consumer_state(self, stream: str, seq: int) -> None:
        with self.db.update() as tx:
            consumer = ensure_stream_buckets(tx, stream).bucket(SUB_BUCKET_CONSUMER)
            consumer.put(KEY_LAST_ACKED_SEQ, uint64_to_bytes(seq))
            consumer.put(KEY_LAST_ACKED_TS, int64_to_bytes(_unix_nano(datetime.now(timezone.utc))))

    def ping(self) -> None:
        """Raise if the database cannot be read."""
        with self.db.view():
            pass

    def close(self) -> None:
        self.db.close()