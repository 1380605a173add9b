"""Ledger collaborator interface.

The publisher only ever talks to the external ledger through this narrow
surface: read the published root and window timing, read the pending
change log, submit a root, confirm it, and wait for inclusion. Signing,
key management and RPC plumbing live behind implementations of it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from repminer.reputation.models import ChangeLogEntry


class LedgerError(Exception):
    """Base class for ledger collaborator failures."""


class LedgerUnavailable(LedgerError):
    """Transient network / node failure. Safe to retry the same call."""


class NonceConflict(LedgerError):
    """The transaction nonce was already consumed."""


class TransactionFailed(LedgerError):
    """A transaction was included but reverted."""


@dataclass(frozen=True)
class TxHandle:
    """A broadcast transaction."""

    tx_hash: str
    nonce: int


@dataclass(frozen=True)
class TxReceipt:
    """Inclusion receipt for a transaction."""

    tx_hash: str
    block_number: int
    block_timestamp: int


@runtime_checkable
class LedgerClient(Protocol):
    """What the submission scheduler needs from the external ledger."""

    async def get_current_root(self) -> str:
        """Last confirmed reputation root (0x hex)."""
        ...

    async def get_window_open_timestamp(self) -> int:
        """Block time at which the current submission window opened."""
        ...

    async def get_current_block_timestamp(self) -> int:
        """Timestamp of the latest block."""
        ...

    async def get_pending_change_log(self) -> list[ChangeLogEntry]:
        """Change-log entries waiting to be folded into the next root."""
        ...

    async def get_submitted_root(self) -> str | None:
        """Root this publisher already submitted in the open window, if any."""
        ...

    async def get_account_nonce(self) -> int:
        """Next nonce the publisher account will use."""
        ...

    async def submit_root(self, root: str, n_keys: int) -> TxHandle:
        ...

    async def confirm_root(self, round_index: int, nonce: int | None = None) -> TxHandle:
        ...

    async def wait_for_inclusion(self, tx: TxHandle) -> TxReceipt:
        """Block until ``tx`` is included. No timeout of its own."""
        ...


__all__ = [
    "LedgerClient",
    "LedgerError",
    "LedgerUnavailable",
    "NonceConflict",
    "TransactionFailed",
    "TxHandle",
    "TxReceipt",
]
