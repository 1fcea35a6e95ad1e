from datetime import datetime, timezone

import pytest

from natstier.meta.buckets import BucketDB
from natstier.meta.obj_index import (
    ObjChunkSet,
    ObjEntry,
    ObjIndexMixin,
    decode_obj_chunk_set,
    decode_obj_entry,
    encode_obj_chunk_set,
    encode_obj_entry,
)
from natstier.meta.schema import NotFoundError


class _Store(ObjIndexMixin):
    def __init__(self, db):
        self.db = db


@pytest.fixture
def store(tmp_path):
    db = BucketDB(tmp_path / "obj.db")
    yield _Store(db)
    db.close()


def _now():
    return datetime.now(timezone.utc)


def test_record_and_lookup_obj(store):
    entry = ObjEntry(
        bucket="files", name="report.pdf", nuid="abc123", size=1024 * 1024, chunks=8,
        digest="sha256=deadbeef", meta_seq=100, meta_block_id=5, deleted=False,
        mod_time=_now(), updated_at=_now(),
    )
    store.record_obj_meta("OBJ_files", entry)

    got = store.lookup_obj("OBJ_files", "report.pdf")
    assert got.name == "report.pdf"
    assert got.nuid == "abc123"
    assert got.size == 1024 * 1024
    assert got.chunks == 8
    assert got.digest == "sha256=deadbeef"
    assert got == entry


def test_obj_not_found(store):
    with pytest.raises(NotFoundError):
        store.lookup_obj("OBJ_files", "nonexistent")


def test_record_and_lookup_obj_chunks(store):
    store.record_obj_chunks("OBJ_files", ObjChunkSet(
        nuid="abc123", chunk_seqs=[101, 102, 103, 104], chunk_blocks=[5, 5, 5, 6],
        total_size=512 * 1024))

    got = store.lookup_obj_chunks("OBJ_files", "abc123")
    assert len(got.chunk_seqs) == 4
    assert got.total_size == 512 * 1024
    assert got.chunk_blocks == [5, 5, 5, 6]


def test_obj_chunks_merge(store):
    store.record_obj_chunks("OBJ_files", ObjChunkSet(
        nuid="abc123", chunk_seqs=[101, 102], chunk_blocks=[1, 1], total_size=256 * 1024))
    store.record_obj_chunks("OBJ_files", ObjChunkSet(
        nuid="abc123", chunk_seqs=[103, 104], chunk_blocks=[2, 2], total_size=256 * 1024))

    got = store.lookup_obj_chunks("OBJ_files", "abc123")
    assert len(got.chunk_seqs) == 4
    assert got.total_size == 512 * 1024
    assert got.chunk_seqs == [101, 102, 103, 104]
    assert got.chunk_blocks == [1, 1, 2, 2]


def test_obj_chunks_not_found(store):
    with pytest.raises(NotFoundError):
        store.lookup_obj_chunks("OBJ_files", "nonexistent")


def test_list_objects(store):
    names = ["report.pdf", "image.png", "data.csv"]
    for i, name in enumerate(names):
        store.record_obj_meta("OBJ_files", ObjEntry(
            bucket="files", name=name, nuid="nuid-" + name, size=(i + 1) * 1024,
            chunks=i + 1, meta_seq=i + 1, meta_block_id=1, mod_time=_now(), updated_at=_now()))

    objs = store.list_objects("OBJ_files")
    assert len(objs) == 3
    assert [o.name for o in objs] == sorted(names)


def test_list_objects_empty_stream(store):
    assert store.list_objects("nonexistent") == []


def test_obj_overwrite(store):
    store.record_obj_meta("OBJ_files", ObjEntry(
        bucket="files", name="report.pdf", nuid="nuid-v1", size=1024, chunks=1,
        meta_seq=10, meta_block_id=1, mod_time=_now(), updated_at=_now()))
    store.record_obj_meta("OBJ_files", ObjEntry(
        bucket="files", name="report.pdf", nuid="nuid-v2", size=2048, chunks=2,
        meta_seq=20, meta_block_id=2, mod_time=_now(), updated_at=_now()))

    got = store.lookup_obj("OBJ_files", "report.pdf")
    assert got.nuid == "nuid-v2"
    assert got.size == 2048


def test_codecs_round_trip():
    entry = ObjEntry(bucket="files", name="a.bin", nuid="n1", size=3, deleted=True, mod_time=_now())
    assert decode_obj_entry(encode_obj_entry(entry)) == entry
    chunk_set = ObjChunkSet(nuid="n1", chunk_seqs=[1, 2], chunk_blocks=[7, 7], total_size=3)
    assert decode_obj_chunk_set(encode_obj_chunk_set(chunk_set)) == chunk_set