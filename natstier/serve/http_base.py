"""Plain HTTP response values shared by the API route handlers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Iterable, Iterator, Union

from .responder import to_json

JSON_CONTENT_TYPE = "application/json"


@dataclass
class Response:
    """An HTTP status, headers and a body of bytes or an iterable of byte chunks."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Union[bytes, Iterable[bytes]] = b""

    @property
    def status_line(self) -> str:
        """The status code with its reason phrase, as WSGI expects it."""
        try:
            phrase = HTTPStatus(self.status).phrase
        except ValueError:
            phrase = ""
        return f"{self.status} {phrase}".rstrip()

    def chunks(self) -> Iterator[bytes]:
        """Yield the non-empty pieces of the body."""
        if isinstance(self.body, (bytes, bytearray, memoryview)):
            if self.body:
                yield bytes(self.body)
            return
        for chunk in self.body:
            if chunk:
                yield bytes(chunk)

    def read(self) -> bytes:
        """The whole body; a streamed body is consumed."""
        return b"".join(self.chunks())

    def json(self) -> Any:
        """The body decoded as JSON."""
        return json.loads(self.read())

    def wsgi(self, start_response: Callable) -> Iterable[bytes]:
        """Start a WSGI response and return its body iterable."""
        start_response(self.status_line, list(self.headers.items()))
        return self.chunks()


def json_response(status: int, value: Any) -> Response:
    """A JSON body followed by a newline, with a JSON content type."""
    return Response(status, {"Content-Type": JSON_CONTENT_TYPE}, to_json(value) + b"\n")


def error_response(status: int, message: str) -> Response:
    """A JSON object carrying message under "error"."""
    return json_response(status, {"error": message})