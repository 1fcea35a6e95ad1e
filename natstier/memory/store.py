"""In-process memory tier: an insertion-ordered cache of sealed blocks."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..meta.schema import BlockRef, NotFoundError, Tier


@dataclass
class MemoryTierConfig:
    """Limits of the memory tier; zero means no limit."""

    enabled: bool = False
    max_bytes: int = 0
    max_blocks: int = 0


@dataclass
class StoredMessage:
    """A single message as read back from a tier."""

    stream: str
    subject: str
    sequence: int
    data: bytes
    headers: Optional[dict[str, list[str]]]
    timestamp: datetime


@dataclass
class TierStats:
    tier: Tier
    block_count: int = 0
    total_bytes: int = 0
    capacity_max: int = 0


class MemoryStore:
    """Holds blocks in memory, evicting the oldest when limits are reached.

    Blocks are duck-typed: they carry ``stream``, ``size_bytes``, ``messages``
    (each with ``sequence``, ``subject``, ``data``, ``headers`` and
    ``timestamp``) and an ``index`` whose ``lookup(seq)`` returns an entry
    with a ``sequence`` or None.
    """

    def __init__(self, cfg: Optional[MemoryTierConfig] = None, logger: Optional[logging.Logger] = None) -> None:
        self.cfg = cfg or MemoryTierConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._blocks: "OrderedDict[int, Any]" = OrderedDict()
        self._total_bytes = 0

    def put(self, ref: BlockRef, block: Any) -> None:
        """Store a block; storing a block ID already held does nothing."""
        with self._lock:
            if ref.block_id in self._blocks:
                return
            while self._should_evict(block.size_bytes):
                self._evict_oldest()
            self._blocks[ref.block_id] = block
            self._total_bytes += block.size_bytes
            self.logger.debug(
                "block stored in memory: block_id=%d size=%d total_bytes=%d",
                ref.block_id,
                block.size_bytes,
                self._total_bytes,
            )

    def get(self, ref: BlockRef) -> Any:
        with self._lock:
            block = self._blocks.get(ref.block_id)
            if block is None:
                raise NotFoundError(f"block {ref.block_id} not found in memory tier")
            return block

    def get_message(self, ref: BlockRef, seq: int) -> StoredMessage:
        with self._lock:
            block = self._blocks.get(ref.block_id)
            if block is None:
                raise NotFoundError(f"block {ref.block_id} not found in memory tier")
            if getattr(block, "index", None) is None:
                raise NotFoundError(f"block {ref.block_id} has no index")
            entry = block.index.lookup(seq)
            if entry is None:
                raise NotFoundError(f"sequence {seq} not found in block {ref.block_id}")
            for message in block.messages:
                if message.sequence == entry.sequence:
                    return StoredMessage(
                        stream=block.stream,
                        subject=message.subject,
                        sequence=message.sequence,
                        data=message.data,
                        headers=parse_headers(message.headers),
                        timestamp=message.timestamp,
                    )
            raise NotFoundError(f"sequence {seq} not found in block {ref.block_id} messages")

    def delete(self, ref: BlockRef) -> None:
        """Drop a block; a block not held is not an error."""
        with self._lock:
            block = self._blocks.pop(ref.block_id, None)
            if block is not None:
                self._total_bytes -= block.size_bytes

    def exists(self, ref: BlockRef) -> bool:
        with self._lock:
            return ref.block_id in self._blocks

    def stats(self) -> TierStats:
        with self._lock:
            return TierStats(
                tier=Tier.MEMORY,
                block_count=len(self._blocks),
                total_bytes=self._total_bytes,
                capacity_max=self.cfg.max_bytes,
            )

    def close(self) -> None:
        with self._lock:
            self._blocks.clear()
            self._total_bytes = 0

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _should_evict(self, incoming: int) -> bool:
        if not self._blocks:
            return False
        if self.cfg.max_blocks > 0 and len(self._blocks) >= self.cfg.max_blocks:
            return True
        if self.cfg.max_bytes > 0 and self._total_bytes + incoming > self.cfg.max_bytes:
            return True
        return False

    def _evict_oldest(self) -> None:
        if not self._blocks:
            return
        oldest_id, block = self._blocks.popitem(last=False)
        self._total_bytes -= block.size_bytes
        self.logger.debug("evicted block from memory: block_id=%d", oldest_id)


def parse_headers(raw: Optional[bytes]) -> Optional[dict[str, list[str]]]:
    """Parse "Key: Value" lines; lines without a colon are skipped."""
    if not raw:
        return None
    headers: dict[str, list[str]] = {}
    for line in split_header_lines(raw):
        key, sep, value = line.partition(b":")
        if not sep:
            continue
        if value.startswith(b" "):
            value = value[1:]
        name = key.decode("utf-8", errors="replace")
        headers.setdefault(name, []).append(value.decode("utf-8", errors="replace"))
    return headers


def split_header_lines(data: bytes) -> list[bytes]:
    """Split on newlines, dropping a trailing carriage return and empty lines."""
    parts = data.split(b"\n")
    remainder = parts.pop()
    lines = []
    for part in parts:
        if part.endswith(b"\r"):
            part = part[:-1]
        if part:
            lines.append(part)
    if remainder:
        lines.append(remainder)
    return lines