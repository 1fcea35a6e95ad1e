import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from natstier.memory.store import StoredMessage
from natstier.meta.kv_index import KVKeyEntry, KVRevEntry
from natstier.meta.store import BoltStore
from natstier.serve.kv_responder import KVResponder, error_json

TS = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
STREAM = "KV_config"


class FakeController:
    def __init__(self, messages):
        self.messages = {m.sequence: m for m in messages}

    def retrieve(self, seq):
        try:
            return self.messages[seq]
        except KeyError:
            raise LookupError(f"sequence {seq} not found") from None


@dataclass
class FakePipeline:
    stream: str
    controller: FakeController


class FakeKV:
    def __init__(self):
        self.values = {}

    def put(self, key, value):
        self.values[key] = value
        return len(self.values)


class FakeJetStream:
    def __init__(self, fail=False):
        self.stores = {}
        self.fail = fail

    def key_value(self, bucket):
        if self.fail:
            raise ConnectionError("bucket unavailable")
        return self.stores.setdefault(bucket, FakeKV())


@dataclass
class FakeMsg:
    subject: str
    responses: list = field(default_factory=list)

    def respond(self, data):
        self.responses.append(data)


class FakeConn:
    def __init__(self):
        self.subscriptions = {}

    def subscribe(self, subject, callback):
        self.subscriptions[subject] = callback
        return subject


def _message(seq, data):
    return StoredMessage(
        stream=STREAM, subject=f"$KV.config.k{seq}", sequence=seq, data=data, headers=None, timestamp=TS
    )


@pytest.fixture
def meta():
    store = BoltStore(None)
    yield store
    store.close()


def _record(meta, key, seq, operation="PUT", revision=1):
    meta.record_kv_key(
        STREAM,
        KVKeyEntry(
            bucket="config",
            key=key,
            last_sequence=seq,
            last_block_id=1,
            operation=operation,
            revision=revision,
            updated_at=TS,
        ),
    )


def _responder(meta, jetstream=None, messages=None):
    messages = messages if messages is not None else [_message(42, b"postgres://localhost")]
    pipeline = FakePipeline(STREAM, FakeController(messages))
    return KVResponder({"config": STREAM}, [pipeline], meta, jetstream=jetstream)


def test_get_returns_latest_value(meta):
    _record(meta, "app.database_url", 42, revision=3)
    reply = json.loads(_responder(meta).handle("nts.kv.config.get.app.database_url"))
    assert reply["bucket"] == "config"
    assert reply["key"] == "app.database_url"
    assert reply["value"] == "postgres://localhost"
    assert reply["sequence"] == 42
    assert reply["revision"] == 3
    assert reply["operation"] == "PUT"
    assert datetime.fromisoformat(reply["timestamp"].replace("Z", "+00:00")) == TS


def test_get_unknown_key(meta):
    reply = json.loads(_responder(meta).handle("nts.kv.config.get.unknown.key"))
    assert "not found" in reply["error"]


def test_get_value_missing_from_tiers(meta):
    _record(meta, "app.port", 7)
    reply = json.loads(_responder(meta).handle("nts.kv.config.get.app.port"))
    assert reply["error"].startswith("retrieving value: ")


def test_missing_key():
    responder = KVResponder({"config": STREAM}, [], meta_store=None)
    assert responder.handle("nts.kv.config.get") == error_json("missing key")
    assert json.loads(responder.handle("nts.kv.config.history")) == {"error": "missing key"}
    assert json.loads(responder.handle("nts.kv.config.restore")) == {"error": "missing key"}


def test_invalid_subject_and_unknown_bucket(meta):
    responder = _responder(meta)
    assert json.loads(responder.handle("nts.kv.config")) == {"error": "invalid subject format"}
    assert json.loads(responder.handle("nts.kv.other.get.a")) == {"error": 'KV bucket "other" not found'}


def test_unknown_operation(meta):
    reply = json.loads(_responder(meta).handle("nts.kv.config.watch.a"))
    assert reply == {"error": 'unknown KV operation "watch"'}


def test_keys_filters_deleted_and_prefix(meta):
    _record(meta, "app.host", 1)
    _record(meta, "app.port", 2, operation="DEL")
    _record(meta, "app.user", 3, operation="PURGE")
    _record(meta, "cache.ttl", 4)
    responder = _responder(meta)
    assert json.loads(responder.handle("nts.kv.config.keys")) == ["app.host", "cache.ttl"]
    assert json.loads(responder.handle("nts.kv.config.keys.cache")) == ["cache.ttl"]


def test_keys_empty_is_empty_list(meta):
    assert _responder(meta).handle("nts.kv.config.keys") == b"[]"


def test_history_skips_unretrievable_revisions(meta):
    meta.record_kv_revision(STREAM, "app.port", KVRevEntry(sequence=10, block_id=1))
    meta.record_kv_revision(STREAM, "app.port", KVRevEntry(sequence=20, block_id=2))
    responder = _responder(meta, messages=[_message(10, b"8080")])
    reply = json.loads(responder.handle("nts.kv.config.history.app.port"))
    assert len(reply) == 1
    assert reply[0]["sequence"] == 10
    assert reply[0]["block_id"] == 1
    assert reply[0]["value"] == "8080"


def test_history_without_revisions_is_null(meta):
    assert _responder(meta).handle("nts.kv.config.history.nothing") == b"null"


def test_restore_puts_value_back(meta):
    _record(meta, "app.database_url", 42)
    jetstream = FakeJetStream()
    reply = json.loads(_responder(meta, jetstream).handle("nts.kv.config.restore.app.database_url"))
    assert reply == {"bucket": "config", "key": "app.database_url", "revision": 1, "restored": True}
    assert jetstream.stores["config"].values["app.database_url"] == b"postgres://localhost"


def test_restore_deleted_key(meta):
    _record(meta, "app.port", 42, operation="DEL")
    reply = json.loads(_responder(meta, FakeJetStream()).handle("nts.kv.config.restore.app.port"))
    assert reply == {"error": "key was deleted"}


def test_restore_open_kv_failure(meta):
    _record(meta, "app.database_url", 42)
    reply = json.loads(_responder(meta, FakeJetStream(fail=True)).handle("nts.kv.config.restore.app.database_url"))
    assert reply["error"].startswith("open kv: ")


def test_serve_routes_requests(meta):
    _record(meta, "app.database_url", 42)
    conn = FakeConn()
    assert _responder(meta).serve(conn) == "nts.kv.>"
    msg = FakeMsg("nts.kv.config.get.app.database_url")
    conn.subscriptions["nts.kv.>"](msg)
    assert json.loads(msg.responses[0])["value"] == "postgres://localhost"


def test_serve_without_buckets_does_not_subscribe(meta):
    conn = FakeConn()
    assert KVResponder({}, [], meta).serve(conn) is None
    assert conn.subscriptions == {}


def test_error_json():
    assert error_json("key was deleted") == b'{"error":"key was deleted"}'