"""A small transactional store of nested, ordered key/value buckets."""

from __future__ import annotations

import base64
import json
import os
import threading
from bisect import bisect_left, bisect_right
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

PathLike = Union[str, "os.PathLike[str]"]


class _Node:
    """One bucket's contents: plain values and nested buckets."""

    __slots__ = ("values", "children")

    def __init__(self) -> None:
        self.values: dict[bytes, bytes] = {}
        self.children: dict[bytes, _Node] = {}

    def clone(self) -> "_Node":
        copy = _Node()
        copy.values = dict(self.values)
        copy.children = {name: child.clone() for name, child in self.children.items()}
        return copy


def _as_bytes(key) -> bytes:
    if not isinstance(key, (bytes, bytearray, memoryview)):
        raise TypeError(f"keys must be bytes, not {type(key).__name__}")
    return bytes(key)


def _require_key(key) -> bytes:
    data = _as_bytes(key)
    if not data:
        raise ValueError("key required")
    return data


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def _encode_node(node: _Node) -> dict:
    return {
        "values": {_b64(k): _b64(v) for k, v in node.values.items()},
        "buckets": {_b64(k): _encode_node(c) for k, c in node.children.items()},
    }


def _decode_node(data: dict) -> _Node:
    node = _Node()
    node.values = {_unb64(k): _unb64(v) for k, v in data["values"].items()}
    node.children = {_unb64(k): _decode_node(c) for k, c in data["buckets"].items()}
    return node


class Bucket:
    """A view of one bucket inside a transaction."""

    def __init__(self, node: _Node, writable: bool) -> None:
        self._node = node
        self._writable = writable

    def _check_writable(self) -> None:
        if not self._writable:
            raise RuntimeError("transaction is not writable")

    def get(self, key) -> Optional[bytes]:
        """Return the value stored under key, or None."""
        return self._node.values.get(_as_bytes(key))

    def put(self, key, value) -> None:
        self._check_writable()
        name = _require_key(key)
        if name in self._node.children:
            raise ValueError("incompatible value: key names a bucket")
        self._node.values[name] = bytes(value)

    def delete(self, key) -> None:
        self._check_writable()
        name = _as_bytes(key)
        if name in self._node.children:
            raise ValueError("incompatible value: key names a bucket")
        self._node.values.pop(name, None)

    def bucket(self, name) -> Optional["Bucket"]:
        """Return the nested bucket called name, or None."""
        child = self._node.children.get(_as_bytes(name))
        if child is None:
            return None
        return Bucket(child, self._writable)

    def create_bucket_if_not_exists(self, name) -> "Bucket":
        self._check_writable()
        key = _require_key(name)
        if key in self._node.values:
            raise ValueError("incompatible value: key holds a value")
        child = self._node.children.setdefault(key, _Node())
        return Bucket(child, self._writable)

    def bucket_names(self) -> list[bytes]:
        """Names of the nested buckets, in byte order."""
        return sorted(self._node.children)

    def items(self, start=None) -> Iterator[Tuple[bytes, bytes]]:
        """Yield (key, value) pairs in byte order, from start onwards."""
        keys = sorted(self._node.values)
        first = 0 if start is None else bisect_left(keys, _as_bytes(start))
        for key in keys[first:]:
            value = self._node.values.get(key)
            if value is not None:
                yield key, value

    def floor(self, key) -> Optional[Tuple[bytes, bytes]]:
        """Return the pair with the largest key not above key, or None."""
        keys = sorted(self._node.values)
        position = bisect_right(keys, _as_bytes(key))
        if position == 0:
            return None
        found = keys[position - 1]
        return found, self._node.values[found]

    def last(self) -> Optional[Tuple[bytes, bytes]]:
        """Return the pair with the largest key, or None when empty."""
        if not self._node.values:
            return None
        key = max(self._node.values)
        return key, self._node.values[key]


class Transaction:
    """Access to the top-level buckets for the span of one transaction."""

    def __init__(self, root: _Node, writable: bool) -> None:
        self._root = Bucket(root, writable)
        self.writable = writable

    def bucket(self, name) -> Optional[Bucket]:
        return self._root.bucket(name)

    def create_bucket_if_not_exists(self, name) -> Bucket:
        return self._root.create_bucket_if_not_exists(name)


class BucketDB:
    """Nested buckets kept in memory and saved atomically to a file on commit."""

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._root = self._load()
        self._open = True

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def closed(self) -> bool:
        return not self._open

    def _load(self) -> _Node:
        if self._path is None:
            return _Node()
        if not self._path.exists() or not self._path.read_bytes().strip():
            root = _Node()
            self._write(root)
            return root
        try:
            return _decode_node(json.loads(self._path.read_bytes()))
        except (ValueError, KeyError, TypeError, AttributeError) as err:
            raise ValueError(f"corrupt database file {self._path}: {err}") from err

    def _write(self, root: _Node) -> None:
        if self._path is None:
            return
        temp = self._path.with_name(self._path.name + ".tmp")
        fd = os.open(temp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            json.dump(_encode_node(root), handle)
        os.replace(temp, self._path)

    def _check_open(self) -> None:
        if not self._open:
            raise RuntimeError("database not open")

    @contextmanager
    def update(self) -> Iterator[Transaction]:
        """Run a read-write transaction; it commits only if the block succeeds."""
        self._check_open()
        with self._lock:
            self._check_open()
            working = self._root.clone()
            yield Transaction(working, writable=True)
            self._write(working)
            self._root = working

    @contextmanager
    def view(self) -> Iterator[Transaction]:
        """Run a read-only transaction."""
        self._check_open()
        yield Transaction(self._root, writable=False)

    def close(self) -> None:
        self._open = False

    def __enter__(self) -> "BucketDB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()