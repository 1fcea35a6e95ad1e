"""Retention enforcement and garbage collection across tiers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from ..meta.schema import Tier


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.astimezone(timezone.utc)


class Manager:
    """Deletes blocks whose last message is older than the blob tier's max age.

    ``ctrl`` must provide ``delete_from_tier(ref, tier)``.
    """

    def __init__(
        self,
        ctrl: Any,
        meta_store: Any,
        stream: str,
        *,
        blob_enabled: bool = False,
        blob_max_age: timedelta = timedelta(0),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ctrl = ctrl
        self.meta = meta_store
        self.stream = stream
        self.blob_enabled = blob_enabled
        self.blob_max_age = blob_max_age
        self.logger = logger or logging.getLogger(__name__)

    async def run(self, interval: Union[timedelta, float]) -> None:
        """Run a GC cycle every interval until the task is cancelled."""
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        while True:
            await asyncio.sleep(seconds)
            try:
                await asyncio.to_thread(self.gc_cycle)
            except Exception:
                self.logger.exception("gc cycle error")

    def gc_cycle(self) -> None:
        """Remove expired blocks from every tier holding them and from metadata."""
        if not self.blob_enabled or self.blob_max_age <= timedelta(0):
            return

        blocks = self.meta.list_blocks(self.stream, Tier.BLOB)
        cutoff = datetime.now(timezone.utc) - self.blob_max_age
        for block in blocks:
            if _aware(block.last_ts) >= cutoff:
                continue
            self.logger.info(
                "deleting expired block from all tiers: block_id=%d last_ts=%s cutoff=%s",
                block.block_id,
                block.last_ts.isoformat(),
                cutoff.isoformat(),
            )
            ref = block.ref()
            for tier in block.effective_tiers():
                try:
                    self.ctrl.delete_from_tier(ref, tier)
                except Exception as err:
                    self.logger.error(
                        "failed to delete expired block from tier: block_id=%d tier=%s error=%s",
                        block.block_id,
                        tier,
                        err,
                    )
            try:
                self.meta.delete_block(self.stream, block.block_id)
            except Exception as err:
                self.logger.error(
                    "failed to delete block metadata: block_id=%d error=%s", block.block_id, err
                )