"""Index of Object Store objects and their chunk messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime

from .buckets import BucketDB
from .schema import (
    SUB_BUCKET_OBJ_CHUNK_INDEX,
    SUB_BUCKET_OBJ_INDEX,
    ZERO_TIME,
    NotFoundError,
    ensure_stream_buckets,
    get_stream_bucket,
)


@dataclass
class ObjEntry:
    """A complete object's metadata."""

    bucket: str = ""
    name: str = ""
    nuid: str = ""
    size: int = 0
    chunks: int = 0
    digest: str = ""
    meta_seq: int = 0
    meta_block_id: int = 0
    deleted: bool = False
    mod_time: datetime = ZERO_TIME
    updated_at: datetime = ZERO_TIME


@dataclass
class ObjChunkSet:
    """The chunk messages recorded for one object NUID."""

    nuid: str = ""
    chunk_seqs: list[int] = field(default_factory=list)
    chunk_blocks: list[int] = field(default_factory=list)
    total_size: int = 0


def _time(raw) -> datetime:
    return datetime.fromisoformat(raw) if raw else ZERO_TIME


def encode_obj_entry(entry: ObjEntry) -> bytes:
    return json.dumps(
        {
            "bucket": entry.bucket,
            "name": entry.name,
            "nuid": entry.nuid,
            "size": entry.size,
            "chunks": entry.chunks,
            "digest": entry.digest,
            "meta_seq": entry.meta_seq,
            "meta_block_id": entry.meta_block_id,
            "deleted": entry.deleted,
            "mod_time": entry.mod_time.isoformat(),
            "updated_at": entry.updated_at.isoformat(),
        }
    ).encode("utf-8")


def decode_obj_entry(data: bytes) -> ObjEntry:
    raw = json.loads(data)
    return ObjEntry(
        bucket=raw.get("bucket", ""),
        name=raw.get("name", ""),
        nuid=raw.get("nuid", ""),
        size=int(raw.get("size", 0)),
        chunks=int(raw.get("chunks", 0)),
        digest=raw.get("digest", ""),
        meta_seq=int(raw.get("meta_seq", 0)),
        meta_block_id=int(raw.get("meta_block_id", 0)),
        deleted=bool(raw.get("deleted", False)),
        mod_time=_time(raw.get("mod_time")),
        updated_at=_time(raw.get("updated_at")),
    )


def encode_obj_chunk_set(chunk_set: ObjChunkSet) -> bytes:
    return json.dumps(
        {
            "nuid": chunk_set.nuid,
            "chunk_seqs": list(chunk_set.chunk_seqs),
            "chunk_blocks": list(chunk_set.chunk_blocks),
            "total_size": chunk_set.total_size,
        }
    ).encode("utf-8")


def decode_obj_chunk_set(data: bytes) -> ObjChunkSet:
    raw = json.loads(data)
    return ObjChunkSet(
        nuid=raw.get("nuid", ""),
        chunk_seqs=[int(s) for s in raw.get("chunk_seqs") or []],
        chunk_blocks=[int(b) for b in raw.get("chunk_blocks") or []],
        total_size=int(raw.get("total_size", 0)),
    )


class ObjIndexMixin:
    """Object Store index operations for a store that holds a BucketDB as ``db``."""

    db: BucketDB

    def record_obj_meta(self, stream: str, entry: ObjEntry) -> None:
        with self.db.update() as tx:
            index = ensure_stream_buckets(tx, stream).bucket(SUB_BUCKET_OBJ_INDEX)
            if index is None:
                raise NotFoundError(f'obj_index bucket not found for stream "{stream}"')
            index.put(entry.name.encode("utf-8"), encode_obj_entry(entry))

    def record_obj_chunks(self, stream: str, chunk_set: ObjChunkSet) -> None:
        """Record chunks, appending to any chunks already held for the same NUID."""
        with self.db.update() as tx:
            index = ensure_stream_buckets(tx, stream).bucket(SUB_BUCKET_OBJ_CHUNK_INDEX)
            if index is None:
                raise NotFoundError(f'obj_chunk_index bucket not found for stream "{stream}"')
            key = chunk_set.nuid.encode("utf-8")
            merged = chunk_set
            existing = index.get(key)
            if existing is not None:
                try:
                    previous = decode_obj_chunk_set(existing)
                except (ValueError, TypeError, AttributeError):
                    previous = None
                if previous is not None:
                    merged = replace(
                        previous,
                        chunk_seqs=previous.chunk_seqs + list(chunk_set.chunk_seqs),
                        chunk_blocks=previous.chunk_blocks + list(chunk_set.chunk_blocks),
                        total_size=previous.total_size + chunk_set.total_size,
                    )
            index.put(key, encode_obj_chunk_set(merged))

    def lookup_obj(self, stream: str, name: str) -> ObjEntry:
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                raise NotFoundError(f'stream "{stream}" not found')
            index = stream_bucket.bucket(SUB_BUCKET_OBJ_INDEX)
            raw = index.get(name.encode("utf-8")) if index is not None else None
            if raw is None:
                raise NotFoundError(f'object "{name}" not found')
            return decode_obj_entry(raw)

    def lookup_obj_chunks(self, stream: str, nuid: str) -> ObjChunkSet:
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            if stream_bucket is None:
                raise NotFoundError(f'stream "{stream}" not found')
            index = stream_bucket.bucket(SUB_BUCKET_OBJ_CHUNK_INDEX)
            raw = index.get(nuid.encode("utf-8")) if index is not None else None
            if raw is None:
                raise NotFoundError(f'chunks for NUID "{nuid}" not found')
            return decode_obj_chunk_set(raw)

    def list_objects(self, stream: str) -> list[ObjEntry]:
        """All object entries of a stream, ordered by name."""
        with self.db.view() as tx:
            stream_bucket = get_stream_bucket(tx, stream)
            index = stream_bucket.bucket(SUB_BUCKET_OBJ_INDEX) if stream_bucket else None
            if index is None:
                return []
            return [decode_obj_entry(value) for _, value in index.items()]