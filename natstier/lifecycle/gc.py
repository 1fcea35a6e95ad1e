"""Manual garbage-collection helpers."""

from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger(__name__)


def collect_orphans(meta_store: Any, ctrl: Any, stream: str) -> int:
    """Delete metadata of blocks found in none of their recorded tiers.

    ``ctrl.store_for_tier(tier)`` returns the tier's store or None. Returns
    the number of block records removed.
    """
    collected = 0
    for block in meta_store.list_blocks(stream, None):
        ref = block.ref()
        found = False
        for tier in block.effective_tiers():
            store = ctrl.store_for_tier(tier)
            if store is None:
                continue
            try:
                exists = store.exists(ref)
            except Exception as err:
                _logger.warning(
                    "error checking block existence: block_id=%d tier=%s error=%s",
                    block.block_id,
                    tier,
                    err,
                )
                continue
            if exists:
                found = True
                break
        if found:
            continue
        _logger.warning("orphaned block metadata found, cleaning up: block_id=%d", block.block_id)
        try:
            meta_store.delete_block(stream, block.block_id)
        except Exception as err:
            _logger.error(
                "failed to delete orphan metadata: block_id=%d error=%s", block.block_id, err
            )
            continue
        collected += 1
    return collected