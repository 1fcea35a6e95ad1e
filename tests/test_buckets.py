import pytest

from natstier.meta.buckets import BucketDB


@pytest.fixture
def db(tmp_path):
    database = BucketDB(tmp_path / "test.db")
    yield database
    database.close()


def test_put_then_get_in_view(db):
    with db.update() as tx:
        tx.create_bucket_if_not_exists(b"top").put(b"alpha", b"one")
    with db.view() as tx:
        assert tx.bucket(b"top").get(b"alpha") == b"one"


def test_failed_update_is_rolled_back(db):
    with pytest.raises(ZeroDivisionError):
        with db.update() as tx:
            tx.create_bucket_if_not_exists(b"top").put(b"alpha", b"one")
            1 / 0
    with db.view() as tx:
        assert tx.bucket(b"top") is None


def test_view_is_read_only(db):
    with db.update() as tx:
        tx.create_bucket_if_not_exists(b"top")
    with db.view() as tx:
        with pytest.raises(RuntimeError):
            tx.bucket(b"top").put(b"k", b"v")
        with pytest.raises(RuntimeError):
            tx.create_bucket_if_not_exists(b"other")


def test_data_persists_across_reopen(tmp_path):
    path = tmp_path / "persist.db"
    with BucketDB(path) as first:
        with first.update() as tx:
            outer = tx.create_bucket_if_not_exists(b"outer")
            outer.create_bucket_if_not_exists(b"inner").put(b"k", b"\x00\xffdata")
    with BucketDB(path) as second:
        with second.view() as tx:
            assert tx.bucket(b"outer").bucket(b"inner").get(b"k") == b"\x00\xffdata"


def test_empty_existing_file_opens_as_empty_database(tmp_path):
    path = tmp_path / "empty.db"
    path.write_bytes(b"")
    with BucketDB(path) as database:
        with database.view() as tx:
            assert tx.bucket(b"anything") is None


def test_closed_database_refuses_transactions(db):
    db.close()
    assert db.closed
    with pytest.raises(RuntimeError):
        with db.view():
            pass
    with pytest.raises(RuntimeError):
        with db.update():
            pass


def test_items_are_sorted_and_start_inclusive():
    database = BucketDB()
    keys = [b"d", b"a", b"c", b"b"]
    with database.update() as tx:
        bucket = tx.create_bucket_if_not_exists(b"top")
        for key in keys:
            bucket.put(key, key * 2)
    with database.view() as tx:
        bucket = tx.bucket(b"top")
        assert [k for k, _ in bucket.items()] == sorted(keys)
        assert [k for k, _ in bucket.items(b"b")] == [b"b", b"c", b"d"]
        assert dict(bucket.items())[b"c"] == b"cc"


def test_floor_and_last():
    database = BucketDB()
    with database.update() as tx:
        bucket = tx.create_bucket_if_not_exists(b"top")
        assert bucket.last() is None
        bucket.put(b"b", b"B")
        bucket.put(b"d", b"D")
        assert bucket.floor(b"c") == (b"b", b"B")
        assert bucket.floor(b"d") == (b"d", b"D")
        assert bucket.floor(b"a") is None
        assert bucket.last() == (b"d", b"D")


def test_nested_buckets_are_idempotent_and_listed():
    database = BucketDB()
    with database.update() as tx:
        top = tx.create_bucket_if_not_exists(b"top")
        top.create_bucket_if_not_exists(b"y").put(b"k", b"v")
        top.create_bucket_if_not_exists(b"x")
        again = top.create_bucket_if_not_exists(b"y")
        assert again.get(b"k") == b"v"
        assert top.bucket_names() == [b"x", b"y"]
        assert top.bucket(b"missing") is None
        assert list(top.items()) == []


def test_incompatible_and_empty_keys():
    database = BucketDB()
    with database.update() as tx:
        top = tx.create_bucket_if_not_exists(b"top")
        top.create_bucket_if_not_exists(b"sub")
        top.put(b"value", b"v")
        with pytest.raises(ValueError):
            top.put(b"sub", b"x")
        with pytest.raises(ValueError):
            top.create_bucket_if_not_exists(b"value")
        with pytest.raises(ValueError):
            top.put(b"", b"x")
        with pytest.raises(TypeError):
            top.put("text", b"x")


def test_delete_removes_key():
    database = BucketDB()
    with database.update() as tx:
        top = tx.create_bucket_if_not_exists(b"top")
        top.put(b"k", b"v")
        top.delete(b"k")
        top.delete(b"never-there")
        assert top.get(b"k") is None
        assert list(top.items()) == []