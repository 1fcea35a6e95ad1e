"""Request-reply responder for KV buckets held in cold storage."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .responder import DEFAULT_PREFIX, to_json

_DELETED_OPERATIONS = ("DEL", "PURGE")


def error_json(message: str) -> bytes:
    """A JSON object carrying message under "error"."""
    return to_json({"error": message})


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _text(data: Optional[bytes]) -> str:
    return bytes(data or b"").decode("utf-8", errors="replace")


def _retrieve(pipeline: Any, seq: int) -> Any:
    if pipeline is None:
        raise LookupError("no ingest pipeline for stream")
    return pipeline.controller.retrieve(seq)


class KVResponder:
    """Answers ``{prefix}.kv.{bucket}.{op}[.{key}]`` requests.

    Operations: ``get``, ``history`` and ``restore`` take a key; ``keys``
    takes an optional key prefix. ``buckets`` maps KV bucket names to the
    stream names that back them. Each pipeline has a ``stream`` name and a
    ``controller`` with ``retrieve(seq)``. ``jetstream.key_value(bucket)``
    returns a store whose ``put(key, value)`` returns the new revision.
    """

    def __init__(
        self,
        buckets: Mapping[str, str],
        pipelines: Iterable[Any],
        meta_store: Any,
        jetstream: Any = None,
        prefix: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        by_stream = {p.stream: p for p in pipelines}
        self.buckets = {bucket: (stream, by_stream.get(stream)) for bucket, stream in buckets.items()}
        self.meta = meta_store
        self.jetstream = jetstream
        self.prefix = prefix or DEFAULT_PREFIX
        self.logger = logger or logging.getLogger(__name__)

    @property
    def subject(self) -> str:
        return f"{self.prefix}.kv.>"

    def handle(self, subject: str) -> bytes:
        """The reply payload for a request on subject."""
        parts = subject.split(".")
        if len(parts) < 4:
            return error_json("invalid subject format")
        bucket, op = parts[2], parts[3]

        target = self.buckets.get(bucket)
        if target is None:
            return error_json(f"KV bucket {_quote(bucket)} not found")
        stream, pipeline = target
        rest = ".".join(parts[4:])

        if op == "keys":
            return self._keys(stream, rest)
        handlers = {"get": self._get, "history": self._history, "restore": self._restore}
        handler = handlers.get(op)
        if handler is None:
            return error_json(f"unknown KV operation {_quote(op)}")
        if len(parts) < 5:
            return error_json("missing key")
        return handler(stream, pipeline, bucket, rest)

    def _get(self, stream: str, pipeline: Any, bucket: str, key: str) -> bytes:
        try:
            entry = self.meta.lookup_kv_key(stream, key)
        except Exception as err:
            return error_json(str(err))
        try:
            stored = _retrieve(pipeline, entry.last_sequence)
        except Exception as err:
            return error_json(f"retrieving value: {err}")
        return to_json(
            {
                "bucket": entry.bucket,
                "key": entry.key,
                "value": _text(stored.data),
                "sequence": entry.last_sequence,
                "revision": entry.revision,
                "operation": entry.operation,
                "timestamp": stored.timestamp,
            }
        )

    def _history(self, stream: str, pipeline: Any, bucket: str, key: str) -> bytes:
        try:
            revisions = self.meta.list_kv_key_revisions(stream, key)
        except Exception as err:
            return error_json(str(err))
        entries = []
        for rev in revisions:
            try:
                stored = _retrieve(pipeline, rev.sequence)
            except Exception:
                continue
            entries.append(
                {
                    "sequence": rev.sequence,
                    "block_id": rev.block_id,
                    "value": _text(stored.data),
                    "timestamp": stored.timestamp,
                }
            )
        return to_json(entries or None)

    def _keys(self, stream: str, prefix: str) -> bytes:
        try:
            entries = self.meta.list_kv_keys(stream, prefix)
        except Exception as err:
            return error_json(str(err))
        return to_json([e.key for e in entries if e.operation not in _DELETED_OPERATIONS])

    def _restore(self, stream: str, pipeline: Any, bucket: str, key: str) -> bytes:
        try:
            entry = self.meta.lookup_kv_key(stream, key)
        except Exception as err:
            return error_json(str(err))
        if entry.operation in _DELETED_OPERATIONS:
            return error_json("key was deleted")
        try:
            stored = _retrieve(pipeline, entry.last_sequence)
        except Exception as err:
            return error_json(f"retrieve: {err}")
        try:
            if self.jetstream is None:
                raise LookupError("no JetStream context")
            kv = self.jetstream.key_value(bucket)
        except Exception as err:
            return error_json(f"open kv: {err}")
        try:
            revision = kv.put(key, stored.data)
        except Exception as err:
            return error_json(f"put: {err}")
        return to_json({"bucket": bucket, "key": key, "revision": revision, "restored": True})

    def serve(self, conn: Any) -> Any:
        """Subscribe on conn and answer requests; returns the subscription.

        Returns None without subscribing when no KV bucket is configured.
        """
        if not self.buckets:
            return None
        subject = self.subject

        def callback(msg: Any) -> None:
            msg.respond(self.handle(msg.subject))

        try:
            subscription = conn.subscribe(subject, callback)
        except Exception as err:
            raise RuntimeError(f"subscribing to {subject}: {err}") from err
        self.logger.info("NATS KV responder started: subject=%s buckets=%d", subject, len(self.buckets))
        return subscription