"""Request-reply responder serving cold messages by stream and sequence."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

DEFAULT_PREFIX = "nts"

_UINT64_MAX = 0xFFFF_FFFF_FFFF_FFFF
_DIGITS = re.compile(r"[0-9]+")
_HTML_ESCAPES = {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026", "\u2028": "\\u2028", "\u2029": "\\u2029"}


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _rfc3339(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        import base64

        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"{type(value).__name__} is not JSON serialisable")


def to_json(value: Any) -> bytes:
    """Compact JSON with sorted keys, RFC 3339 times and HTML characters escaped."""
    text = json.dumps(
        value, default=_json_default, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    for char, escaped in _HTML_ESCAPES.items():
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def _text(data: Optional[bytes]) -> str:
    return bytes(data or b"").decode("utf-8", errors="replace")


def _parse_uint(text: str) -> Optional[int]:
    if not _DIGITS.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _UINT64_MAX else None


class GetResponder:
    """Answers ``{prefix}.get.{stream}.{sequence}`` requests.

    Each pipeline has a ``stream`` name and a ``controller`` whose
    ``retrieve(seq)`` returns a stored message or raises.
    """

    def __init__(self, pipelines: Iterable[Any], prefix: str = "", logger: Optional[logging.Logger] = None) -> None:
        self.pipelines = {p.stream: p for p in pipelines}
        self.prefix = prefix or DEFAULT_PREFIX
        self.logger = logger or logging.getLogger(__name__)

    @property
    def subject(self) -> str:
        return f"{self.prefix}.get.>"

    def handle(self, subject: str) -> bytes:
        """The reply payload for a request on subject."""
        parts = subject.split(".")
        if len(parts) < 4:
            return to_json({"error": "invalid subject format"})

        stream, seq_text = parts[2], parts[3]
        seq = _parse_uint(seq_text)
        if seq is None:
            return to_json({"error": f"invalid sequence: {seq_text}"})

        pipeline = self.pipelines.get(stream)
        if pipeline is None:
            return to_json({"error": f"stream {stream} not found"})

        try:
            stored = pipeline.controller.retrieve(seq)
        except Exception as err:
            return to_json({"error": str(err)})

        return to_json(
            {
                "stream": stored.stream,
                "subject": stored.subject,
                "sequence": stored.sequence,
                "data": _text(stored.data),
                "timestamp": stored.timestamp,
            }
        )

    def serve(self, conn: Any) -> Any:
        """Subscribe on conn and answer every request; returns the subscription.

        ``conn.subscribe(subject, callback)`` must call ``callback(msg)`` with
        a message that has ``subject`` and ``respond(data)``.
        """
        subject = self.subject

        def callback(msg: Any) -> None:
            msg.respond(self.handle(msg.subject))

        try:
            subscription = conn.subscribe(subject, callback)
        except Exception as err:
            raise RuntimeError(f"subscribing to {subject}: {err}") from err
        self.logger.info("NATS responder started: subject=%s", subject)
        return subscription