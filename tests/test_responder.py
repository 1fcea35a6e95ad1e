import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from natstier.memory.store import StoredMessage
from natstier.serve.responder import GetResponder, to_json

TS = datetime(2024, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc)


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


@dataclass
class FakeMsg:
    subject: str
    responses: list = field(default_factory=list)

    def respond(self, data):
        self.responses.append(data)


class FakeConn:
    def __init__(self, fail=False):
        self.subscriptions = {}
        self.fail = fail

    def subscribe(self, subject, callback):
        if self.fail:
            raise ConnectionError("connection closed")
        self.subscriptions[subject] = callback
        return subject


def _responder(prefix=""):
    message = StoredMessage(
        stream="ORDERS", subject="ORDERS.test", sequence=5, data=b"msg-4", headers=None, timestamp=TS
    )
    return GetResponder([FakePipeline("ORDERS", FakeController([message]))], prefix=prefix)


def test_invalid_subject_format():
    assert _responder().handle("nts.get.ORDERS") == b'{"error":"invalid subject format"}'


def test_invalid_sequence():
    assert _responder().handle("nts.get.ORDERS.abc") == b'{"error":"invalid sequence: abc"}'


@pytest.mark.parametrize("seq", ["-1", "+1", "", "18446744073709551616"])
def test_sequence_must_be_unsigned_64_bit(seq):
    reply = json.loads(_responder().handle(f"nts.get.ORDERS.{seq}"))
    assert reply == {"error": f"invalid sequence: {seq}"}


def test_unknown_stream():
    reply = json.loads(_responder().handle("nts.get.UNKNOWN.1"))
    assert reply == {"error": "stream UNKNOWN not found"}


def test_retrieve_error_is_reported():
    reply = json.loads(_responder().handle("nts.get.ORDERS.99"))
    assert reply == {"error": "sequence 99 not found"}


def test_successful_get():
    reply = json.loads(_responder().handle("nts.get.ORDERS.5"))
    assert reply["stream"] == "ORDERS"
    assert reply["subject"] == "ORDERS.test"
    assert reply["sequence"] == 5
    assert reply["data"] == "msg-4"
    parsed = datetime.fromisoformat(reply["timestamp"].replace("Z", "+00:00"))
    assert parsed == TS


def test_timestamp_format():
    assert to_json({"t": TS}) == b'{"t":"2024-01-02T03:04:05.123Z"}'


def test_to_json_sorts_and_escapes_html():
    assert to_json({"b": 1, "a": "<&>"}) == b'{"a":"\\u003c\\u0026\\u003e","b":1}'
    assert json.loads(to_json({"a": "<&>"})) == {"a": "<&>"}


def test_to_json_none_is_null():
    assert to_json(None) == b"null"


def test_serve_subscribes_and_answers():
    responder = _responder(prefix="cold")
    conn = FakeConn()
    subscription = responder.serve(conn)
    assert subscription == "cold.get.>"
    msg = FakeMsg("cold.get.ORDERS.5")
    conn.subscriptions["cold.get.>"](msg)
    assert json.loads(msg.responses[0])["data"] == "msg-4"


def test_default_prefix():
    conn = FakeConn()
    _responder().serve(conn)
    assert list(conn.subscriptions) == ["nts.get.>"]


def test_subscribe_failure_raises():
    with pytest.raises(RuntimeError, match="subscribing to nts.get.>"):
        _responder().serve(FakeConn(fail=True))