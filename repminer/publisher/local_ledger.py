"""In-memory ledger for mock runs and tests.

Simulates just enough of the external ledger for a single publisher: a
block clock that only moves when told to (or follows wall time), per-account nonces, one
submission per window, submit-before-confirm ordering, and a window that
reopens at the confirming block's time.
"""

from __future__ import annotations

import hashlib
import time
from collections import defaultdict
from typing import Iterable

import bittensor as bt

from repminer.reputation.models import ChangeLogEntry

from .ledger import LedgerError, NonceConflict, TxHandle, TxReceipt

EMPTY_ROOT_HEX = "0x" + "00" * 32


class LocalLedger:
    """Single-process LedgerClient implementation."""

    def __init__(
        self,
        block_timestamp: int | None = None,
        window_opened_at: int | None = None,
        wall_clock: bool = False,
    ):
        self.wall_clock = wall_clock
        self.block_timestamp = int(block_timestamp if block_timestamp is not None else time.time())
        self.block_number = 0
        self.window_opened_at = window_opened_at if window_opened_at is not None else self.block_timestamp
        self.current_root = EMPTY_ROOT_HEX
        self.confirmed_roots: list[str] = []
        self.pending_log: list[ChangeLogEntry] = []
        self.submitted_root: str | None = None
        self.submitted_n_keys: int = 0

        self._nonce = 0
        self._receipts: dict[str, TxReceipt] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)

    # -- Simulation controls --

    def advance(self, seconds: int) -> None:
        """Mine an empty block ``seconds`` later."""
        self.block_timestamp += int(seconds)
        self.block_number += 1

    def add_log_entries(self, entries: Iterable[ChangeLogEntry]) -> None:
        self.pending_log.extend(entries)

    def inject_failure(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``error``."""
        self._failures[method].extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    def _broadcast(self, kind: str, nonce: int | None) -> TxHandle:
        if nonce is None:
            nonce = self._nonce
        if nonce < self._nonce:
            raise NonceConflict(f"nonce {nonce} already used (next is {self._nonce})")
        if nonce > self._nonce:
            raise LedgerError(f"nonce gap: got {nonce}, next is {self._nonce}")
        self._nonce += 1
        self.block_number += 1
        tx_hash = "0x" + hashlib.sha256(f"{kind}:{nonce}:{self.block_number}".encode()).hexdigest()
        self._receipts[tx_hash] = TxReceipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            block_timestamp=self.block_timestamp,
        )
        return TxHandle(tx_hash=tx_hash, nonce=nonce)

    # -- LedgerClient --

    async def get_current_root(self) -> str:
        self._maybe_fail("get_current_root")
        return self.current_root

    async def get_window_open_timestamp(self) -> int:
        self._maybe_fail("get_window_open_timestamp")
        return self.window_opened_at

    async def get_current_block_timestamp(self) -> int:
        self._maybe_fail("get_current_block_timestamp")
        if self.wall_clock:
            self.block_timestamp = max(self.block_timestamp, int(time.time()))
        return self.block_timestamp

    async def get_pending_change_log(self) -> list[ChangeLogEntry]:
        self._maybe_fail("get_pending_change_log")
        return list(self.pending_log)

    async def get_submitted_root(self) -> str | None:
        self._maybe_fail("get_submitted_root")
        return self.submitted_root

    async def get_account_nonce(self) -> int:
        self._maybe_fail("get_account_nonce")
        return self._nonce

    async def submit_root(self, root: str, n_keys: int) -> TxHandle:
        self._maybe_fail("submit_root")
        if self.submitted_root is not None:
            raise LedgerError("a root was already submitted in this window")
        tx = self._broadcast("submit", None)
        self.submitted_root = root
        self.submitted_n_keys = n_keys
        bt.logging.debug({"local_ledger": {"event": "submitted", "root": root, "nonce": tx.nonce}})
        return tx

    async def confirm_root(self, round_index: int, nonce: int | None = None) -> TxHandle:
        self._maybe_fail("confirm_root")
        if self.submitted_root is None:
            raise LedgerError("nothing submitted to confirm")
        tx = self._broadcast("confirm", nonce)
        self.current_root = self.submitted_root
        self.confirmed_roots.append(self.submitted_root)
        self.submitted_root = None
        self.pending_log = []
        self.window_opened_at = self.block_timestamp
        bt.logging.debug({"local_ledger": {"event": "confirmed", "root": self.current_root, "round": round_index}})
        return tx

    async def wait_for_inclusion(self, tx: TxHandle) -> TxReceipt:
        self._maybe_fail("wait_for_inclusion")
        receipt = self._receipts.get(tx.tx_hash)
        if receipt is None:
            raise LedgerError(f"unknown transaction {tx.tx_hash}")
        return receipt


__all__ = ["EMPTY_ROOT_HEX", "LocalLedger"]
