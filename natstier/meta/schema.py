"""Metadata schema: bucket names, block records and key helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .buckets import Bucket, Transaction

BUCKET_SYSTEM = b"system"
BUCKET_STREAMS = b"streams"
KEY_SCHEMA_VERSION = b"schema_version"
KEY_LAST_COMPACTION = b"last_compaction"
SUB_BUCKET_BLOCKS = b"blocks"
SUB_BUCKET_SEQ_INDEX = b"seq_index"
SUB_BUCKET_TIME_INDEX = b"time_index"
SUB_BUCKET_CONSUMER = b"consumer_state"
KEY_LAST_ACKED_SEQ = b"last_acked_seq"
KEY_LAST_ACKED_TS = b"last_acked_ts"

# Schema v2: KV and Object Store indexes.
SUB_BUCKET_KV_KEY_INDEX = b"kv_key_index"
SUB_BUCKET_KV_REV_INDEX = b"kv_rev_index"
SUB_BUCKET_OBJ_INDEX = b"obj_index"
SUB_BUCKET_OBJ_CHUNK_INDEX = b"obj_chunk_index"

V2_SUB_BUCKETS = (
    SUB_BUCKET_KV_KEY_INDEX,
    SUB_BUCKET_KV_REV_INDEX,
    SUB_BUCKET_OBJ_INDEX,
    SUB_BUCKET_OBJ_CHUNK_INDEX,
)
STREAM_SUB_BUCKETS = (
    SUB_BUCKET_BLOCKS,
    SUB_BUCKET_SEQ_INDEX,
    SUB_BUCKET_TIME_INDEX,
    SUB_BUCKET_CONSUMER,
) + V2_SUB_BUCKETS

CURRENT_SCHEMA_VERSION = 2

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_UINT64_MASK = 0xFFFF_FFFF_FFFF_FFFF


class NotFoundError(LookupError):
    """A stream, block or index entry does not exist."""


class Tier(enum.IntEnum):
    """Storage tiers, ordered from hot to cold."""

    MEMORY = 0
    FILE = 1
    BLOB = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class BlockRef:
    stream: str
    block_id: int
    first_seq: int = 0
    last_seq: int = 0


@dataclass
class BlockEntry:
    """The metadata record for a single block."""

    stream: str = ""
    block_id: int = 0
    first_seq: int = 0
    last_seq: int = 0
    first_ts: datetime = ZERO_TIME
    last_ts: datetime = ZERO_TIME
    msg_count: int = 0
    size_bytes: int = 0
    current_tier: Tier = Tier.MEMORY
    tiers: list[Tier] = field(default_factory=list)
    s3_key: str = ""
    created_at: datetime = ZERO_TIME
    demoted_at: datetime = ZERO_TIME
    subjects: list[str] = field(default_factory=list)

    def effective_tiers(self) -> list[Tier]:
        """Tiers holding this block; falls back to current_tier for legacy records."""
        if self.tiers:
            return list(self.tiers)
        return [self.current_tier]

    def ref(self) -> BlockRef:
        return BlockRef(
            stream=self.stream,
            block_id=self.block_id,
            first_seq=self.first_seq,
            last_seq=self.last_seq,
        )

    def to_dict(self) -> dict:
        return {
            "stream": self.stream,
            "block_id": self.block_id,
            "first_seq": self.first_seq,
            "last_seq": self.last_seq,
            "first_ts": self.first_ts.isoformat(),
            "last_ts": self.last_ts.isoformat(),
            "msg_count": self.msg_count,
            "size_bytes": self.size_bytes,
            "current_tier": int(self.current_tier),
            "tiers": [int(t) for t in self.tiers],
            "s3_key": self.s3_key,
            "created_at": self.created_at.isoformat(),
            "demoted_at": self.demoted_at.isoformat(),
            "subjects": list(self.subjects),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BlockEntry":
        def when(name: str) -> datetime:
            raw = data.get(name)
            return datetime.fromisoformat(raw) if raw else ZERO_TIME

        return cls(
            stream=data.get("stream", ""),
            block_id=int(data.get("block_id", 0)),
            first_seq=int(data.get("first_seq", 0)),
            last_seq=int(data.get("last_seq", 0)),
            first_ts=when("first_ts"),
            last_ts=when("last_ts"),
            msg_count=int(data.get("msg_count", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
            current_tier=Tier(data.get("current_tier", 0)),
            tiers=[Tier(t) for t in data.get("tiers") or []],
            s3_key=data.get("s3_key", ""),
            created_at=when("created_at"),
            demoted_at=when("demoted_at"),
            subjects=list(data.get("subjects") or []),
        )


def uint64_to_bytes(value: int) -> bytes:
    """Big-endian 8-byte encoding, so byte order matches numeric order."""
    if not 0 <= value <= _UINT64_MASK:
        raise ValueError(f"{value} does not fit in an unsigned 64-bit integer")
    return value.to_bytes(8, "big")


def bytes_to_uint64(data: bytes) -> int:
    if len(data) < 8:
        raise ValueError(f"need 8 bytes, got {len(data)}")
    return int.from_bytes(data[:8], "big")


def int64_to_bytes(value: int) -> bytes:
    """Encode a signed value as its two's-complement unsigned 64-bit form."""
    return (value & _UINT64_MASK).to_bytes(8, "big")


def stream_bucket_name(stream: str) -> bytes:
    return stream.encode("utf-8")


def ensure_stream_buckets(tx: Transaction, stream: str) -> Bucket:
    """Create the stream's bucket and all its sub-buckets if missing."""
    streams = tx.create_bucket_if_not_exists(BUCKET_STREAMS)
    stream_bucket = streams.create_bucket_if_not_exists(stream_bucket_name(stream))
    for name in STREAM_SUB_BUCKETS:
        stream_bucket.create_bucket_if_not_exists(name)
    return stream_bucket


def get_stream_bucket(tx: Transaction, stream: str) -> Optional[Bucket]:
    streams = tx.bucket(BUCKET_STREAMS)
    if streams is None:
        return None
    return streams.bucket(stream_bucket_name(stream))