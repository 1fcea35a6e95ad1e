import pytest

from natstier.meta.buckets import BucketDB
from natstier.meta.migrations import MigrationMixin
from natstier.meta.schema import (
    BUCKET_STREAMS,
    BUCKET_SYSTEM,
    KEY_SCHEMA_VERSION,
    SUB_BUCKET_BLOCKS,
    SUB_BUCKET_CONSUMER,
    SUB_BUCKET_SEQ_INDEX,
    SUB_BUCKET_TIME_INDEX,
    V2_SUB_BUCKETS,
    bytes_to_uint64,
    get_stream_bucket,
    uint64_to_bytes,
)


class _Store(MigrationMixin):
    def __init__(self, db):
        self.db = db


def _schema_version(db):
    with db.view() as tx:
        raw = tx.bucket(BUCKET_SYSTEM).get(KEY_SCHEMA_VERSION)
        return bytes_to_uint64(raw)


def _write_v1(path):
    with BucketDB(path) as db:
        with db.update() as tx:
            tx.create_bucket_if_not_exists(BUCKET_SYSTEM).put(KEY_SCHEMA_VERSION, uint64_to_bytes(1))
            streams = tx.create_bucket_if_not_exists(BUCKET_STREAMS)
            stream_bucket = streams.create_bucket_if_not_exists(b"ORDERS")
            for name in (SUB_BUCKET_BLOCKS, SUB_BUCKET_SEQ_INDEX, SUB_BUCKET_TIME_INDEX, SUB_BUCKET_CONSUMER):
                stream_bucket.create_bucket_if_not_exists(name)
            stream_bucket.bucket(SUB_BUCKET_BLOCKS).put(uint64_to_bytes(1), b"block-one")


def test_migrate_v1_to_v2(tmp_path):
    path = tmp_path / "migrate.db"
    _write_v1(path)

    with BucketDB(path) as db:
        _Store(db).migrate()
        assert _schema_version(db) == 2
        with db.view() as tx:
            stream_bucket = get_stream_bucket(tx, "ORDERS")
            missing = [n for n in V2_SUB_BUCKETS if stream_bucket.bucket(n) is None]
            assert missing == []
            assert stream_bucket.bucket(SUB_BUCKET_BLOCKS).get(uint64_to_bytes(1)) == b"block-one"

    with BucketDB(path) as reopened:
        assert _schema_version(reopened) == 2


def test_migrate_idempotent(tmp_path):
    with BucketDB(tmp_path / "current.db") as db:
        with db.update() as tx:
            tx.create_bucket_if_not_exists(BUCKET_SYSTEM).put(KEY_SCHEMA_VERSION, uint64_to_bytes(2))
        store = _Store(db)
        store.migrate()
        store.migrate()
        assert _schema_version(db) == 2


def test_migrate_without_system_bucket_fails():
    db = BucketDB()
    with db.update() as tx:
        tx.create_bucket_if_not_exists(BUCKET_STREAMS).create_bucket_if_not_exists(b"ORDERS")
    with pytest.raises(RuntimeError, match="system bucket not found"):
        _Store(db).migrate()
    with db.view() as tx:
        assert get_stream_bucket(tx, "ORDERS").bucket_names() == []