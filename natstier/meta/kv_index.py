"""Index of KV bucket keys and their revisions held in cold storage."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from .buckets import BucketDB
from .schema import (
    SUB_BUCKET_KV_KEY_INDEX,
    SUB_BUCKET_KV_REV_INDEX,
    ZERO_TIME,
    NotFoundError,
    ensure_stream_buckets,
    get_stream_bucket,
    uint64_to_bytes,
)


@dataclass
class KVKeyEntry:
    """Latest known state of a KV key."""

    bucket: str = ""
    key: str = ""
    last_sequence: int = 0
    last_block_id: int = 0
    operation: str = ""  # "PUT", "DEL" or "PURGE"
    revision: int = 0
    updated_at: datetime = ZERO_TIME


@dataclass
class KVRevEntry:
    """One revision of a key."""

    sequence: int = 0
    block_id: int = 0


def encode_kv_key_entry(entry: KVKeyEntry) -> bytes:
    return json.dumps(
        {
            "bucket": entry.bucket,
            "key": entry.key,
            "last_sequence": entry.last_sequence,
            "last_block_id": entry.last_block_id,
            "operation": entry.operation,
            "revision": entry.revision,
            "updated_at": entry.updated_at.isoformat(),
        }
    ).encode("utf-8")


def decode_kv_key_entry(data: bytes) -> KVKeyEntry:
    raw = json.loads(data)
    updated = raw.get("updated_at")
    return KVKeyEntry(
        bucket=raw.get("bucket", ""),
        key=raw.get("key", ""),
        last_sequence=int(raw.get("last_sequence", 0)),
        last_block_id=int(raw.get("last_block_id", 0)),
        operation=raw.get("operation", ""),
        revision=int(raw.get("revision", 0)),
        updated_at=datetime.fromisoformat(updated) if updated else ZERO_TIME,
    )


def encode_kv_rev_entry(entry: KVRevEntry) -> bytes:
    return json.dumps({"sequence": entry.sequence, "block_id": entry.block_id}).encode("utf-8")


def decode_kv_rev_entry(data: bytes) -> KVRevEntry:
    raw = json.loads(data)
    return KVRevEntry(sequence=int(raw.get("sequence", 0)), block_id=int(raw.get("block_id", 0)))


def kv_rev_key(key: str, seq: int) -> bytes:
    """Composite key: the key, a zero byte, then the big-endian sequence."""
    return kv_rev_key_prefix(key) + uint64_to_bytes(seq)


def kv_rev_key_prefix(key: str) -> bytes:
    """Prefix shared by all revisions of a key."""
    return key.encode("utf-8") + b"\x00"


class KVIndexMixin:
    """KV index operations for a store that holds a BucketDB as ``db``."""

    db: BucketDB

    def record_kv_key(self, stream: str, entry: KVKeyEntry) -> None:
        with self.db.update() as tx:
            index = ensure_stream_buckets(tx, stream).bucket(SUB_BUCKET_KV_KEY_INDEX)
            if index is None:
                raise NotFoundError(f'kv_key_index bucket not found for stream "{stream}"')
            index.put(entry.key.encode("utf-8"), encode_kv_key_entry(entry))

    def record_kv_revision(self, stream: str, key: str, entry: KVRevEntry) -> None:
        with self.db.update() as tx:
            index = ensure_stream_buckets(tx, stream).bucket(SUB_BUCKET_KV_REV_INDEX)
            if index is None:
                raise NotFoundError(f'kv_rev_index bucket not found for stream "{stream}"')
            index.put(kv_rev_key(key, entry.sequence), encode_kv_rev_entry(entry))

    def lookup_kv_key(self, stream: str, key: str) -> KVKeyEntry:
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                raise NotFoundError(f'stream "{stream}" not found')
            index = stream_bucket.bucket(SUB_BUCKET_KV_KEY_INDEX)
            raw = index.get(key.encode("utf-8")) if index is not None else None
            if raw is None:
                raise NotFoundError(f'key "{key}" not found')
            return decode_kv_key_entry(raw)

    def list_kv_keys(self, stream: str, prefix: str = "") -> list[KVKeyEntry]:
        """Key entries in key order, limited to keys starting with prefix."""
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            index = stream_bucket.bucket(SUB_BUCKET_KV_KEY_INDEX) if stream_bucket else None
            if index is None:
                return []
            prefix_bytes = prefix.encode("utf-8")
            entries = []
            for name, value in index.items(prefix_bytes or None):
                if not name.startswith(prefix_bytes):
                    break
                entries.append(decode_kv_key_entry(value))
            return entries

    def list_kv_key_revisions(self, stream: str, key: str) -> list[KVRevEntry]:
        """Revisions of a key in sequence order."""
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            index = stream_bucket.bucket(SUB_BUCKET_KV_REV_INDEX) if stream_bucket else None
            if index is None:
                return []
            prefix = kv_rev_key_prefix(key)
            entries = []
            for name, value in index.items(prefix):
                if not name.startswith(prefix):
                    break
                entries.append(decode_kv_rev_entry(value))
            return entries