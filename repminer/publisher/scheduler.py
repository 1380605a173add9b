"""Submission scheduler.

Single-writer control loop that publishes a new reputation root once per
ledger window:

    Idle -> Applying -> Submitting -> Confirming -> Idle

Idle polls the ledger's window-open time against the ledger's own block
time and moves on once more than ``window_seconds`` have passed. Applying
folds the pending change log into a new version. Submitting broadcasts the
root and waits for inclusion. Confirming sends the confirmation with the
submit nonce + 1.

The loop never trusts in-memory state across restarts or unexpected
errors: reconcile() derives the state from the ledger and the local
version store. Transient ledger errors retry the single call, never the
whole cycle. Inclusion waits have no timeout but raise a "stuck" alarm in
the log every ``stuck_alarm_seconds``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Union

import bittensor as bt

from repminer.reputation.applier import ChangeLogApplier
from repminer.reputation.errors import AmountOverflow, InvalidRequest, StateCorruption, VersionNotFound
from repminer.reputation.keys import parse_digest

from .ledger import LedgerClient, LedgerUnavailable, NonceConflict, TxHandle, TxReceipt


@dataclass(frozen=True)
class Idle:
    window_opened_at: int | None = None


@dataclass(frozen=True)
class Applying:
    pass


@dataclass(frozen=True)
class Submitting:
    version: int
    root: str
    n_keys: int


@dataclass(frozen=True)
class Confirming:
    version: int | None
    root: str
    submit_nonce: int | None


SchedulerState = Union[Idle, Applying, Submitting, Confirming]


class SubmissionScheduler:
    """Drives the submit/confirm handshake against the ledger."""

    def __init__(
        self,
        ledger: LedgerClient,
        applier: ChangeLogApplier,
        poll_interval: float = 10.0,
        window_seconds: int = 86400,
        stuck_alarm_seconds: float = 600.0,
        round_index: int = 0,
        max_consecutive_errors: int = 10,
    ):
        self.ledger = ledger
        self.applier = applier
        self.poll_interval = poll_interval
        self.window_seconds = window_seconds
        self.stuck_alarm_seconds = stuck_alarm_seconds
        self.round_index = round_index
        self.max_consecutive_errors = max_consecutive_errors

        self._running = False
        self._state: SchedulerState | None = None
        self._state_since = time.monotonic()
        self._stuck_since: float | None = None
        self._halted_reason: str | None = None
        self._cycles = 0
        self._last_confirmed_root: str | None = None

    @property
    def state(self) -> SchedulerState | None:
        return self._state

    @property
    def halted_reason(self) -> str | None:
        return self._halted_reason

    # -- Loop --

    async def run(self) -> None:
        """Main loop. Returns on stop() (once Idle), halt, or too many errors."""
        self._running = True
        bt.logging.info({
            "scheduler": {
                "status": "starting",
                "poll_interval": self.poll_interval,
                "window_seconds": self.window_seconds,
            }
        })

        state: SchedulerState | None = None
        consecutive_errors = 0

        while True:
            if not self._running and (state is None or isinstance(state, Idle)):
                break
            try:
                if state is None:
                    state = await self.reconcile()
                state = await self.step(state)
                consecutive_errors = 0
            except asyncio.CancelledError:
                break
            except (AmountOverflow, StateCorruption) as e:
                self._halted_reason = f"{type(e).__name__}: {e}"
                bt.logging.error({
                    "scheduler": {
                        "status": "halted",
                        "reason": self._halted_reason,
                        "action": "manual remediation required",
                    }
                })
                break
            except Exception as e:
                consecutive_errors += 1
                bt.logging.error({"scheduler_cycle_error": str(e), "consecutive": consecutive_errors})
                if consecutive_errors >= self.max_consecutive_errors:
                    self._halted_reason = f"too many consecutive errors: {e}"
                    bt.logging.error({"scheduler": "too_many_errors, stopping"})
                    break
                # Forget in-memory progress; re-derive from ledger facts
                state = None
                try:
                    await asyncio.sleep(self.poll_interval * consecutive_errors)
                except asyncio.CancelledError:
                    break

        self._running = False
        bt.logging.info({"scheduler": "stopped"})

    def stop(self) -> None:
        """Stop after the current cycle has returned to Idle."""
        self._running = False

    # -- Reconciliation --

    async def reconcile(self) -> SchedulerState:
        """Derive the current state from the ledger and the local store."""
        local = self.applier.state
        submitted = await self._ledger_call("get_submitted_root")
        ledger_root = await self._ledger_call("get_current_root")

        if await self._local_version(ledger_root) is None:
            bt.logging.warning({
                "scheduler_reconcile": {
                    "event": "ledger_root_unknown_locally",
                    "ledger_root": ledger_root,
                    "local_version": local.version,
                }
            })

        if submitted is not None:
            version = await self._local_version(submitted)
            if version is None:
                bt.logging.warning({"scheduler_reconcile": {"event": "submitted_root_unknown_locally", "root": submitted}})
            state: SchedulerState = Confirming(version=version, root=submitted, submit_nonce=None)
        else:
            opened = await self._ledger_call("get_window_open_timestamp")
            state = Idle(window_opened_at=opened)

        bt.logging.info({
            "scheduler_reconcile": {
                "state": type(state).__name__,
                "local_version": local.version,
                "local_root": "0x" + local.root.hex(),
                "watermark": local.watermark,
            }
        })
        self._enter(state)
        return state

    async def _local_version(self, root: str) -> int | None:
        try:
            return await self.applier.state.version_for_root(parse_digest(root))
        except (VersionNotFound, InvalidRequest):
            return None

    # -- Transitions --

    async def step(self, state: SchedulerState) -> SchedulerState:
        """Perform exactly one transition from ``state``."""
        self._enter(state)
        if isinstance(state, Idle):
            nxt = await self._step_idle(state)
        elif isinstance(state, Applying):
            nxt = await self._step_applying()
        elif isinstance(state, Submitting):
            nxt = await self._step_submitting(state)
        elif isinstance(state, Confirming):
            nxt = await self._step_confirming(state)
        else:
            raise TypeError(f"unknown scheduler state: {state!r}")

        if type(nxt) is not type(state):
            bt.logging.info({"scheduler": {"transition": f"{type(state).__name__}->{type(nxt).__name__}"}})
        self._enter(nxt)
        return nxt

    async def _step_idle(self, state: Idle) -> SchedulerState:
        opened = await self._ledger_call("get_window_open_timestamp")
        now = await self._ledger_call("get_current_block_timestamp")
        if now - opened > self.window_seconds:
            bt.logging.info({"scheduler": {"event": "window_elapsed", "opened": opened, "now": now}})
            return Applying()

        # Fixed poll, never a sleep until the window end
        await asyncio.sleep(self.poll_interval)
        return Idle(window_opened_at=opened)

    async def _step_applying(self) -> SchedulerState:
        entries = await self._ledger_call("get_pending_change_log")
        version = await self.applier.apply_batch(entries)
        local = self.applier.state
        root = await local.root_at(version)
        return Submitting(version=version, root="0x" + root.hex(), n_keys=local.n_keys)

    async def _step_submitting(self, state: Submitting) -> SchedulerState:
        bt.logging.info({"scheduler": {"event": "submitting", "version": state.version, "root": state.root}})
        tx = await self._ledger_call("submit_root", state.root, state.n_keys)
        receipt = await self._await_inclusion(tx)
        bt.logging.info({"scheduler": {"event": "submit_included", "tx": tx.tx_hash, "block": receipt.block_number}})
        return Confirming(version=state.version, root=state.root, submit_nonce=tx.nonce)

    async def _step_confirming(self, state: Confirming) -> SchedulerState:
        nonce = state.submit_nonce + 1 if state.submit_nonce is not None else None
        try:
            tx = await self._ledger_call("confirm_root", self.round_index, nonce=nonce)
        except NonceConflict as e:
            fresh = await self._ledger_call("get_account_nonce")
            bt.logging.warning({"scheduler": {"event": "nonce_conflict", "tried": nonce, "retry_with": fresh, "error": str(e)}})
            tx = await self._ledger_call("confirm_root", self.round_index, nonce=fresh)

        receipt = await self._await_inclusion(tx)
        self._cycles += 1
        self._last_confirmed_root = state.root
        bt.logging.info({
            "scheduler": {
                "event": "root_confirmed",
                "root": state.root,
                "version": state.version,
                "tx": tx.tx_hash,
                "block": receipt.block_number,
            }
        })
        return Idle()

    # -- Ledger calls --

    async def _ledger_call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Call a ledger method, retrying LedgerUnavailable indefinitely."""
        started = time.monotonic()
        next_alarm = started + self.stuck_alarm_seconds
        attempt = 0
        while True:
            try:
                result = await getattr(self.ledger, method)(*args, **kwargs)
                self._stuck_since = None
                return result
            except LedgerUnavailable as e:
                attempt += 1
                now = time.monotonic()
                if now >= next_alarm:
                    self._alarm(method, started, now)
                    next_alarm = now + self.stuck_alarm_seconds
                bt.logging.warning({"ledger_call": {"method": method, "retry": attempt, "error": str(e)}})
                await asyncio.sleep(self.poll_interval)

    async def _await_inclusion(self, tx: TxHandle) -> TxReceipt:
        """Wait for inclusion with no timeout, alarming while it drags on."""
        started = time.monotonic()
        task = asyncio.ensure_future(self._ledger_call("wait_for_inclusion", tx))
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.stuck_alarm_seconds)
                if done:
                    self._stuck_since = None
                    return task.result()
                self._alarm("wait_for_inclusion", started, time.monotonic(), tx=tx.tx_hash)
        finally:
            if not task.done():
                task.cancel()

    def _alarm(self, method: str, started: float, now: float, **extra: Any) -> None:
        if self._stuck_since is None:
            self._stuck_since = started
        bt.logging.error({
            "scheduler_stuck": {
                "method": method,
                "state": type(self._state).__name__,
                "waiting_seconds": round(now - started, 1),
                **extra,
            }
        })

    # -- Introspection --

    def _enter(self, state: SchedulerState) -> None:
        if state != self._state:
            self._state = state
            self._state_since = time.monotonic()

    def status(self) -> dict[str, Any]:
        state = self._state
        return {
            "state": type(state).__name__ if state is not None else None,
            "detail": asdict(state) if state is not None else {},
            "in_state_seconds": round(time.monotonic() - self._state_since, 1),
            "stuck_seconds": (
                round(time.monotonic() - self._stuck_since, 1)
                if self._stuck_since is not None else None
            ),
            "cycles": self._cycles,
            "last_confirmed_root": self._last_confirmed_root,
            "halted": self._halted_reason,
            "running": self._running,
        }


__all__ = [
    "Applying",
    "Confirming",
    "Idle",
    "SchedulerState",
    "SubmissionScheduler",
]
