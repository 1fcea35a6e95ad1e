"""HTTP routes for KV buckets held in cold storage."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple

from .http_base import Response, error_response, json_response

_DELETED_OPERATIONS = ("DEL", "PURGE")


def _text(data: Optional[bytes]) -> str:
    return bytes(data or b"").decode("utf-8", errors="replace")


def _retrieve(pipeline: Any, seq: int) -> Any:
    if pipeline is None:
        raise LookupError("no ingest pipeline for stream")
    return pipeline.controller.retrieve(seq)


class KVRoutesMixin:
    """KV Store routes for a handler.

    The host provides ``meta`` (the metadata store), ``pipelines`` (stream
    name to pipeline, each with a ``controller.retrieve(seq)``),
    ``kv_buckets`` (KV bucket name to stream name) and ``jetstream``, whose
    ``key_value(bucket)`` returns a store with ``put(key, value)``.
    """

    meta: Any
    pipelines: Mapping[str, Any]
    kv_buckets: Mapping[str, str]
    jetstream: Any = None

    def _resolve_kv_bucket(self, bucket: str) -> Tuple[str, Any]:
        stream = self.kv_buckets.get(bucket, "")
        if not stream:
            return "", None
        return stream, self.pipelines.get(stream)

    def handle_kv_get(self, bucket: str, key: str) -> Response:
        stream, pipeline = self._resolve_kv_bucket(bucket)
        if pipeline is None:
            return error_response(404, "KV bucket not found")
        try:
            entry = self.meta.lookup_kv_key(stream, key)
        except Exception as err:
            return error_response(404, str(err))
        try:
            stored = _retrieve(pipeline, entry.last_sequence)
        except Exception as err:
            return error_response(500, str(err))
        return json_response(
            200,
            {
                "bucket": entry.bucket,
                "key": entry.key,
                "value": _text(stored.data),
                "sequence": entry.last_sequence,
                "revision": entry.revision,
                "operation": entry.operation,
                "timestamp": stored.timestamp,
            },
        )

    def handle_kv_history(self, bucket: str, key: str) -> Response:
        stream, pipeline = self._resolve_kv_bucket(bucket)
        if pipeline is None:
            return error_response(404, "KV bucket not found")
        try:
            revisions = self.meta.list_kv_key_revisions(stream, key)
        except Exception as err:
            return error_response(404, str(err))
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
        return json_response(200, entries or None)

    def handle_kv_list_keys(self, bucket: str, prefix: str = "") -> Response:
        stream, _ = self._resolve_kv_bucket(bucket)
        if not stream:
            return error_response(404, "KV bucket not found")
        try:
            entries = self.meta.list_kv_keys(stream, prefix)
        except Exception as err:
            return error_response(500, str(err))
        return json_response(200, [e.key for e in entries if e.operation not in _DELETED_OPERATIONS])

    def handle_kv_restore(self, bucket: str, key: str) -> Response:
        """Write the last cold value of key back into the live KV bucket."""
        stream, pipeline = self._resolve_kv_bucket(bucket)
        if pipeline is None:
            return error_response(404, "KV bucket not found")
        try:
            entry = self.meta.lookup_kv_key(stream, key)
        except Exception as err:
            return error_response(404, str(err))
        if entry.operation in _DELETED_OPERATIONS:
            return error_response(410, "key was deleted")
        try:
            stored = _retrieve(pipeline, entry.last_sequence)
        except Exception as err:
            return error_response(500, str(err))
        try:
            if self.jetstream is None:
                raise LookupError("no JetStream context")
            kv = self.jetstream.key_value(bucket)
        except Exception as err:
            return error_response(500, f"opening KV: {err}")
        try:
            revision = kv.put(key, stored.data)
        except Exception as err:
            return error_response(500, f"restoring to hot tier: {err}")
        return json_response(200, {"bucket": bucket, "key": key, "revision": revision, "restored": True})