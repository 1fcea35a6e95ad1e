"""Request-reply responder for Object Store buckets held in cold storage."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .kv_responder import error_json
from .responder import DEFAULT_PREFIX, to_json

MAX_RESPONSE_BYTES = 1024 * 1024


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _retrieve(pipeline: Any, seq: int) -> Any:
    if pipeline is None:
        raise LookupError("no ingest pipeline for stream")
    return pipeline.controller.retrieve(seq)


def object_info(entry: Any) -> dict:
    """The JSON fields describing one object."""
    return {
        "name": entry.name,
        "bucket": entry.bucket,
        "nuid": entry.nuid,
        "size": entry.size,
        "chunks": entry.chunks,
        "digest": entry.digest,
        "deleted": entry.deleted,
        "modtime": entry.mod_time,
    }


def object_listing(entries: Iterable[Any]) -> Optional[list[dict]]:
    """The JSON list of objects, or None when there are none."""
    objects = [
        {
            "name": e.name,
            "size": e.size,
            "chunks": e.chunks,
            "digest": e.digest,
            "deleted": e.deleted,
            "modtime": e.mod_time,
        }
        for e in entries
    ]
    return objects or None


class ObjResponder:
    """Answers ``{prefix}.obj.{bucket}.{op}[.{name}]`` requests.

    Operations: ``get`` (the reassembled object), ``info`` and ``list``.
    ``buckets`` maps Object Store bucket names to the streams that back them.
    """

    def __init__(
        self,
        buckets: Mapping[str, str],
        pipelines: Iterable[Any],
        meta_store: Any,
        prefix: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        by_stream = {p.stream: p for p in pipelines}
        self.buckets = {bucket: (stream, by_stream.get(stream)) for bucket, stream in buckets.items()}
        self.meta = meta_store
        self.prefix = prefix or DEFAULT_PREFIX
        self.logger = logger or logging.getLogger(__name__)

    @property
    def subject(self) -> str:
        return f"{self.prefix}.obj.>"

    def handle(self, subject: str) -> bytes:
        """The reply payload for a request on subject."""
        parts = subject.split(".")
        if len(parts) < 4:
            return error_json("invalid subject format")
        bucket, op = parts[2], parts[3]

        target = self.buckets.get(bucket)
        if target is None:
            return error_json(f"Object Store bucket {_quote(bucket)} not found")
        stream, pipeline = target

        if op == "list":
            return self._list(stream)
        if op not in ("get", "info"):
            return error_json(f"unknown Object Store operation {_quote(op)}")
        if len(parts) < 5:
            return error_json("missing object name")
        name = ".".join(parts[4:])
        if op == "get":
            return self._get(stream, pipeline, name)
        return self._info(stream, name)

    def _get(self, stream: str, pipeline: Any, name: str) -> bytes:
        try:
            entry = self.meta.lookup_obj(stream, name)
        except Exception as err:
            return error_json(str(err))
        if entry.deleted:
            return error_json(f"object {_quote(name)} has been deleted")
        try:
            chunk_set = self.meta.lookup_obj_chunks(stream, entry.nuid)
        except Exception as err:
            return error_json(f"looking up chunks: {err}")

        pieces = []
        for seq in chunk_set.chunk_seqs:
            try:
                stored = _retrieve(pipeline, seq)
            except Exception as err:
                return error_json(f"retrieving chunk seq={seq}: {err}")
            pieces.append(bytes(stored.data or b""))
        payload = b"".join(pieces)

        if len(payload) > MAX_RESPONSE_BYTES:
            return error_json(
                "object too large for NATS response; use HTTP API /v1/objects/{bucket}/get/{name}"
            )
        return payload

    def _info(self, stream: str, name: str) -> bytes:
        try:
            entry = self.meta.lookup_obj(stream, name)
        except Exception as err:
            return error_json(str(err))
        return to_json(object_info(entry))

    def _list(self, stream: str) -> bytes:
        try:
            entries = self.meta.list_objects(stream)
        except Exception as err:
            return error_json(str(err))
        return to_json(object_listing(entries))

    def serve(self, conn: Any) -> Any:
        """Subscribe on conn and answer requests; returns the subscription.

        Returns None without subscribing when no Object Store bucket is configured.
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
        self.logger.info(
            "NATS Object Store responder started: subject=%s buckets=%d", subject, len(self.buckets)
        )
        return subscription