"""HTTP routes for Object Store buckets held in cold storage."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Mapping, Tuple

from .http_base import Response, error_response, json_response
from .obj_responder import object_info, object_listing

_logger = logging.getLogger(__name__)


class ObjRoutesMixin:
    """Object Store routes for a handler.

    The host provides ``meta``, ``pipelines`` (stream name to pipeline, each
    with a ``controller.retrieve(seq)``) and ``obj_buckets`` (Object Store
    bucket name to stream name); ``logger`` is optional.
    """

    meta: Any
    pipelines: Mapping[str, Any]
    obj_buckets: Mapping[str, str]

    def _resolve_obj_bucket(self, bucket: str) -> Tuple[str, Any]:
        stream = self.obj_buckets.get(bucket, "")
        if not stream:
            return "", None
        return stream, self.pipelines.get(stream)

    def _stream_chunks(self, pipeline: Any, seqs: Iterable[int]) -> Iterator[bytes]:
        logger = getattr(self, "logger", None) or _logger
        for seq in seqs:
            try:
                stored = pipeline.controller.retrieve(seq)
            except Exception as err:
                logger.error("failed to retrieve chunk: seq=%d error=%s", seq, err)
                return
            yield bytes(stored.data or b"")

    def handle_obj_get(self, bucket: str, name: str) -> Response:
        """The object's bytes, streamed chunk by chunk; stops at the first failed chunk."""
        stream, pipeline = self._resolve_obj_bucket(bucket)
        if pipeline is None:
            return error_response(404, "Object Store bucket not found")
        try:
            entry = self.meta.lookup_obj(stream, name)
        except Exception as err:
            return error_response(404, str(err))
        if entry.deleted:
            quoted = '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'
            return error_response(410, f"object {quoted} has been deleted")
        try:
            chunk_set = self.meta.lookup_obj_chunks(stream, entry.nuid)
        except Exception as err:
            return error_response(500, str(err))

        headers = {
            "Content-Type": "application/octet-stream",
            "X-Nts-Object-Name": entry.name,
            "X-Nts-Object-Size": str(entry.size),
            "X-Nts-Object-Digest": entry.digest,
            "X-Nts-Object-Chunks": str(entry.chunks),
        }
        return Response(200, headers, self._stream_chunks(pipeline, list(chunk_set.chunk_seqs)))

    def handle_obj_info(self, bucket: str, name: str) -> Response:
        stream, _ = self._resolve_obj_bucket(bucket)
        if not stream:
            return error_response(404, "Object Store bucket not found")
        try:
            entry = self.meta.lookup_obj(stream, name)
        except Exception as err:
            return error_response(404, str(err))
        return json_response(200, object_info(entry))

    def handle_obj_list(self, bucket: str) -> Response:
        stream, _ = self._resolve_obj_bucket(bucket)
        if not stream:
            return error_response(404, "Object Store bucket not found")
        try:
            entries = self.meta.list_objects(stream)
        except Exception as err:
            return error_response(500, str(err))
        return json_response(200, object_listing(entries))