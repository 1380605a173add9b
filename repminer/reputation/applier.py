"""Folds change-log batches into the reputation state.

Each batch is applied to a private copy of the current trie and committed
as exactly one new version. Entries at or below the persisted watermark
are skipped, so re-delivering a batch is a no-op. Any AmountOverflow
rejects the whole batch before anything is committed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable

import bittensor as bt

from .errors import AmountOverflow
from .keys import decode_value, encode_value
from .models import ChangeLogEntry
from .state import VersionedState
from .trie import ReputationTrie


@dataclass
class FoldResult:
    """Outcome of folding a batch into a working trie."""

    trie: ReputationTrie
    watermark: int
    changed: set[bytes] = field(default_factory=set)
    applied: int = 0
    new_keys: int = 0
    gaps: list[tuple[int, int]] = field(default_factory=list)


def fold_entries(
    trie: ReputationTrie,
    entries: Iterable[ChangeLogEntry],
    watermark: int,
) -> FoldResult:
    """Apply ``entries`` (ascending sequence) to ``trie`` in place."""
    result = FoldResult(trie=trie, watermark=watermark)
    next_index = len(trie)

    for entry in entries:
        if entry.sequence <= result.watermark:
            continue

        key = entry.key
        raw = trie.get(key)
        if raw is None:
            amount, index = 0, next_index
            next_index += 1
            result.new_keys += 1
        else:
            amount, index = decode_value(raw)

        new_amount = amount + entry.delta
        try:
            value = encode_value(new_amount, index)
        except AmountOverflow:
            raise AmountOverflow(new_amount, key) from None

        trie.put(key, value)
        result.changed.add(key)
        result.applied += 1
        if entry.sequence != result.watermark + 1:
            result.gaps.append((result.watermark, entry.sequence))
        result.watermark = entry.sequence

    return result


class ChangeLogApplier:
    """Single writer for the reputation state."""

    def __init__(self, state: VersionedState):
        self.state = state
        self._lock = asyncio.Lock()

    async def apply_batch(self, entries: Iterable[ChangeLogEntry]) -> int:
        """Apply a batch and commit it. Returns the (possibly unchanged) version."""
        ordered = sorted(entries, key=lambda e: e.sequence)

        async with self._lock:
            watermark = self.state.watermark
            pending = [e for e in ordered if e.sequence > watermark]
            skipped = len(ordered) - len(pending)

            if not pending:
                bt.logging.info({
                    "change_log": {
                        "event": "nothing_to_apply",
                        "received": len(ordered),
                        "skipped": skipped,
                        "watermark": watermark,
                        "version": self.state.version,
                    }
                })
                return self.state.version

            try:
                result = await asyncio.to_thread(fold_entries, self.state.current, pending, watermark)
            except AmountOverflow as e:
                bt.logging.error({
                    "change_log": {
                        "event": "batch_rejected",
                        "reason": "amount_overflow",
                        "error": str(e),
                        "watermark": watermark,
                        "entries": len(pending),
                    }
                })
                raise

            for last, seq in result.gaps:
                bt.logging.warning({"change_log": {"event": "sequence_gap", "after": last, "next": seq}})

            version = await self.state.commit(result.trie, result.watermark, result.changed)
            bt.logging.info({
                "change_log": {
                    "event": "batch_applied",
                    "version": version,
                    "applied": result.applied,
                    "skipped": skipped,
                    "new_keys": result.new_keys,
                    "watermark": result.watermark,
                }
            })
            return version


__all__ = ["ChangeLogApplier", "FoldResult", "fold_entries"]
