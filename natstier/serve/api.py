"""The HTTP API: stream, block and message routes plus KV and Object Store routes."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional, Union
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, make_server

from .http_base import Response, error_response, json_response
from .kv_routes import KVRoutesMixin
from .obj_routes import ObjRoutesMixin

_UINT64_MAX = 0xFFFF_FFFF_FFFF_FFFF
_DIGITS = re.compile(r"[0-9]+")
_DEFAULT_COUNT = 100
_TIER_KEYS = {0: "memory", 1: "file", 2: "blob"}


def _parse_uint(text: Union[str, int, None]) -> Optional[int]:
    if isinstance(text, int):
        return text if 0 <= text <= _UINT64_MAX else None
    if text is None or not _DIGITS.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _UINT64_MAX else None


def _tier_name(tier: Any) -> str:
    name = getattr(tier, "name", None)
    return name.lower() if isinstance(name, str) else str(tier)


def _text(data: Optional[bytes]) -> str:
    return bytes(data or b"").decode("utf-8", errors="replace")


def _fraction(value: int, precision: int) -> str:
    whole, rest = divmod(value, 10**precision)
    digits = f"{rest:0{precision}d}".rstrip("0")
    return f"{whole}.{digits}" if digits else str(whole)


def _format_duration(delta: timedelta) -> str:
    """Render a duration the way service logs and clients expect, e.g. "2h0m1.5s"."""
    nanos = (delta // timedelta(microseconds=1)) * 1000
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)
    if nanos < 1_000:
        return f"{sign}{nanos}ns"
    if nanos < 1_000_000:
        return f"{sign}{_fraction(nanos, 3)}µs"
    if nanos < 1_000_000_000:
        return f"{sign}{_fraction(nanos, 6)}ms"
    hours, rest = divmod(nanos, 3600 * 10**9)
    minutes, rest = divmod(rest, 60 * 10**9)
    seconds = _fraction(rest, 9) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return f"{sign}{seconds}"


def _age(created_at: datetime) -> str:
    now = datetime.now(created_at.tzinfo) if created_at.tzinfo is not None else datetime.now()
    return _format_duration(now - created_at)


_SEGMENT = r"[^/]+"


def _route(pattern: str) -> re.Pattern:
    regex = re.sub(r"\{(\w+)\.\.\.\}", r"(?P<\1>.*)", pattern)
    regex = re.sub(r"\{(\w+)\}", rf"(?P<\1>{_SEGMENT})", regex)
    return re.compile(regex)


class ApiHandler(KVRoutesMixin, ObjRoutesMixin):
    """Answers the HTTP API.

    Each pipeline has a ``stream`` name and a ``controller`` providing
    ``retrieve(seq)``, ``retrieve_range(start, end)``,
    ``demote(block_id, from_tier, to_tier)`` and
    ``promote(block_id, from_tier, to_tier)``. ``kv_buckets`` and
    ``obj_buckets`` map bucket names to the streams that back them.
    """

    def __init__(
        self,
        pipelines: Iterable[Any] = (),
        meta_store: Any = None,
        *,
        kv_buckets: Optional[Mapping[str, str]] = None,
        obj_buckets: Optional[Mapping[str, str]] = None,
        jetstream: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.pipelines = {p.stream: p for p in pipelines}
        self.meta = meta_store
        self.kv_buckets = dict(kv_buckets or {})
        self.obj_buckets = dict(obj_buckets or {})
        self.jetstream = jetstream
        self.logger = logger or logging.getLogger(__name__)
        self._routes = self._build_routes()

    def _build_routes(self) -> list[tuple[str, re.Pattern, Callable[[dict, Mapping[str, str]], Response]]]:
        table = [
            ("GET", "/v1/status", lambda p, q: self.handle_status()),
            ("GET", "/v1/streams", lambda p, q: self.handle_streams()),
            ("GET", "/v1/streams/{stream}/stats", lambda p, q: self.handle_stream_stats(p["stream"])),
            ("GET", "/v1/messages/{stream}/{seq}", lambda p, q: self.handle_get_message(p["stream"], p["seq"])),
            (
                "GET",
                "/v1/messages/{stream}",
                lambda p, q: self.handle_get_messages(p["stream"], q.get("start", ""), q.get("count", "")),
            ),
            ("GET", "/v1/blocks/{stream}", lambda p, q: self.handle_list_blocks(p["stream"])),
            ("GET", "/v1/blocks/{stream}/{blockID}", lambda p, q: self.handle_get_block(p["stream"], p["blockID"])),
            ("POST", "/v1/admin/demote/{stream}/{blockID}", lambda p, q: self.handle_demote(p["stream"], p["blockID"])),
            (
                "POST",
                "/v1/admin/promote/{stream}/{blockID}",
                lambda p, q: self.handle_promote(p["stream"], p["blockID"]),
            ),
            ("GET", "/v1/kv/{bucket}/get/{key...}", lambda p, q: self.handle_kv_get(p["bucket"], p["key"])),
            ("GET", "/v1/kv/{bucket}/history/{key...}", lambda p, q: self.handle_kv_history(p["bucket"], p["key"])),
            ("GET", "/v1/kv/{bucket}/keys", lambda p, q: self.handle_kv_list_keys(p["bucket"], q.get("prefix", ""))),
            ("POST", "/v1/kv/{bucket}/restore/{key...}", lambda p, q: self.handle_kv_restore(p["bucket"], p["key"])),
            ("GET", "/v1/objects/{bucket}/get/{name...}", lambda p, q: self.handle_obj_get(p["bucket"], p["name"])),
            ("GET", "/v1/objects/{bucket}/info/{name...}", lambda p, q: self.handle_obj_info(p["bucket"], p["name"])),
            ("GET", "/v1/objects/{bucket}/list", lambda p, q: self.handle_obj_list(p["bucket"])),
        ]
        return [(method, _route(pattern), action) for method, pattern, action in table]

    def _tier_counts(self, stream: str) -> tuple[int, dict[str, int], dict[str, int]]:
        try:
            blocks = self.meta.list_blocks(stream, None)
        except Exception:
            blocks = []
        counts = dict.fromkeys(_TIER_KEYS.values(), 0)
        sizes = dict.fromkeys(_TIER_KEYS.values(), 0)
        for block in blocks:
            for tier in block.effective_tiers():
                key = _TIER_KEYS.get(int(tier))
                if key is not None:
                    counts[key] += 1
                    sizes[key] += block.size_bytes
        return len(blocks), counts, sizes

    def _pipeline_and_block(self, stream: str, block_id_text: str) -> Union[Response, tuple[Any, Any, int]]:
        block_id = _parse_uint(block_id_text)
        if block_id is None:
            return error_response(400, "invalid block ID")
        pipeline = self.pipelines.get(stream)
        if pipeline is None:
            return error_response(404, "stream not found")
        try:
            entry = self.meta.get_block(stream, block_id)
        except Exception as err:
            return error_response(404, str(err))
        return pipeline, entry, block_id

    def handle_status(self) -> Response:
        return json_response(200, {"status": "ok", "streams": len(self.pipelines)})

    def handle_streams(self) -> Response:
        streams = []
        for name in self.pipelines:
            total, counts, _ = self._tier_counts(name)
            streams.append(
                {
                    "name": name,
                    "total_blocks": total,
                    "memory_blocks": counts["memory"],
                    "file_blocks": counts["file"],
                    "blob_blocks": counts["blob"],
                }
            )
        return json_response(200, streams or None)

    def handle_stream_stats(self, stream: str) -> Response:
        if stream not in self.pipelines:
            return error_response(404, "stream not found")
        total, counts, sizes = self._tier_counts(stream)
        return json_response(
            200,
            {
                "stream": stream,
                "tiers": {key: {"blocks": counts[key], "bytes": sizes[key]} for key in counts},
                "total_blocks": total,
            },
        )

    def handle_get_message(self, stream: str, seq: Union[str, int]) -> Response:
        sequence = _parse_uint(seq)
        if sequence is None:
            return error_response(400, "invalid sequence")
        pipeline = self.pipelines.get(stream)
        if pipeline is None:
            return error_response(404, "stream not found")
        try:
            msg = pipeline.controller.retrieve(sequence)
        except Exception as err:
            return error_response(404, str(err))
        return json_response(
            200,
            {
                "stream": msg.stream,
                "subject": msg.subject,
                "sequence": msg.sequence,
                "data": _text(msg.data),
                "headers": msg.headers,
                "timestamp": msg.timestamp,
            },
        )

    def handle_get_messages(
        self, stream: str, start: Union[str, int, None] = "", count: Union[str, int, None] = ""
    ) -> Response:
        """Up to count messages from start; unparsable values count as zero, a zero count as 100."""
        pipeline = self.pipelines.get(stream)
        if pipeline is None:
            return error_response(404, "stream not found")
        first = _parse_uint(start) or 0
        amount = _parse_uint(count) or _DEFAULT_COUNT
        try:
            msgs = pipeline.controller.retrieve_range(first, first + amount - 1)
        except Exception as err:
            return error_response(500, str(err))
        result = [
            {
                "sequence": m.sequence,
                "subject": m.subject,
                "data": _text(m.data),
                "timestamp": m.timestamp,
            }
            for m in msgs
        ]
        return json_response(200, result or None)

    def handle_list_blocks(self, stream: str) -> Response:
        try:
            blocks = self.meta.list_blocks(stream, None)
        except Exception as err:
            return error_response(500, str(err))
        result = [
            {
                "block_id": b.block_id,
                "first_seq": b.first_seq,
                "last_seq": b.last_seq,
                "msg_count": b.msg_count,
                "size_bytes": b.size_bytes,
                "tier": _tier_name(b.current_tier),
                "tiers": [_tier_name(t) for t in b.effective_tiers()],
                "created_at": b.created_at,
                "age": _age(b.created_at),
            }
            for b in blocks
        ]
        return json_response(200, result or None)

    def handle_get_block(self, stream: str, block_id: Union[str, int]) -> Response:
        parsed = _parse_uint(block_id)
        if parsed is None:
            return error_response(400, "invalid block ID")
        try:
            entry = self.meta.get_block(stream, parsed)
        except Exception as err:
            return error_response(404, str(err))
        return json_response(200, entry.to_dict())

    def handle_demote(self, stream: str, block_id: Union[str, int]) -> Response:
        """Evict a block from its hottest tier; it must be held in another tier too."""
        found = self._pipeline_and_block(stream, block_id)
        if isinstance(found, Response):
            return found
        pipeline, entry, parsed = found
        tiers = list(entry.effective_tiers())
        if len(tiers) <= 1:
            return error_response(400, "block exists in only one tier, cannot evict")
        hottest, next_tier = tiers[0], tiers[1]
        try:
            pipeline.controller.demote(parsed, hottest, next_tier)
        except Exception as err:
            return error_response(500, str(err))
        return json_response(200, {"status": "evicted", "from": _tier_name(hottest)})

    def handle_promote(self, stream: str, block_id: Union[str, int]) -> Response:
        """Copy a block into the tier just above its hottest one."""
        found = self._pipeline_and_block(stream, block_id)
        if isinstance(found, Response):
            return found
        pipeline, entry, parsed = found
        tiers = list(entry.effective_tiers())
        if not tiers:
            return error_response(400, "block is not held in any tier")
        hottest = tiers[0]
        if int(hottest) == 0:
            return error_response(400, "block is already in hottest tier (memory)")
        previous = type(hottest)(int(hottest) - 1)
        try:
            pipeline.controller.promote(parsed, hottest, previous)
        except Exception as err:
            return error_response(500, str(err))
        return json_response(200, {"status": "promoted", "to": _tier_name(previous)})

    def dispatch(self, method: str, path: str, query: Optional[Mapping[str, Any]] = None) -> Response:
        """Route a request to its handler; unknown paths give 404, wrong methods 405."""
        params: dict[str, str] = {}
        for name, value in (query or {}).items():
            if isinstance(value, (list, tuple)):
                value = value[0] if value else ""
            params[name] = value
        allowed = []
        for route_method, pattern, action in self._routes:
            match = pattern.fullmatch(path)
            if match is None:
                continue
            if route_method != method.upper():
                allowed.append(route_method)
                continue
            return action(match.groupdict(), params)
        if allowed:
            return Response(
                405,
                {"Allow": ", ".join(sorted(set(allowed))), "Content-Type": "text/plain; charset=utf-8"},
                b"Method Not Allowed\n",
            )
        return Response(404, {"Content-Type": "text/plain; charset=utf-8"}, b"404 page not found\n")

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
        response = self.dispatch(environ.get("REQUEST_METHOD", "GET"), environ.get("PATH_INFO", "/"), query)
        return response.wsgi(start_response)


def _split_listen(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"listen address {listen!r} has no port")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address {listen!r}") from None


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args) -> None:
        pass


def run_http(handler: ApiHandler, listen: str, stop: Optional[threading.Event] = None) -> None:
    """Serve the API on listen ("host:port") until stop is set."""
    host, port = _split_listen(listen)
    with make_server(host, port, handler, handler_class=_QuietHandler) as server:
        handler.logger.info("HTTP API listening: addr=%s", listen)
        if stop is None:
            server.serve_forever()
            return
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            stop.wait()
        finally:
            server.shutdown()
            thread.join()