"""Publisher entrypoint.

Single process that owns the reputation state: serves proofs over HTTP,
folds the ledger's change log into new versions, and submits/confirms
roots once per window. With --scheduler.disabled it only serves proofs
from the versions already in the store.
"""

import asyncio
import inspect
import os
import signal
import sys

import bittensor as bt
from dotenv import load_dotenv
from pydantic import ValidationError


def _build_store(config):
    if config.store.backend == "sql":
        from repminer.reputation.store.database import SQLVersionStore
        return SQLVersionStore(config.store.url)

    from repminer.reputation.store.filesystem import FilesystemVersionStore
    return FilesystemVersionStore(data_dir=os.path.expanduser(config.store.data_dir))


def _build_ledger(config):
    if config.mock:
        from repminer.publisher.local_ledger import LocalLedger
        bt.logging.warning({"publisher": "using in-process mock ledger"})
        return LocalLedger(wall_clock=True)

    from repminer.base.config import load_ledger_factory
    from repminer.publisher.ledger import LedgerClient

    factory = load_ledger_factory(config.ledger.factory)
    params = inspect.signature(factory).parameters
    ledger = factory(config) if params else factory()
    if not isinstance(ledger, LedgerClient):
        raise TypeError(f"{config.ledger.factory} did not return a LedgerClient")
    return ledger


async def _serve(config) -> None:
    from repminer.publisher.scheduler import SubmissionScheduler
    from repminer.reputation.applier import ChangeLogApplier
    from repminer.reputation.oracle import ReputationOracle
    from repminer.reputation.state import VersionedState
    from repminer.reputation.store.http_server import OracleHTTPServer

    store = _build_store(config)
    state = VersionedState(
        store,
        cache_size=config.store.cache_size,
        snapshot_interval=config.store.snapshot_interval,
    )
    await state.open()

    ledger = None
    scheduler = None
    if config.scheduler.disabled:
        bt.logging.warning({"publisher": "scheduler disabled, serving proofs only"})
    else:
        ledger = _build_ledger(config)
        scheduler = SubmissionScheduler(
            ledger,
            ChangeLogApplier(state),
            poll_interval=config.scheduler.poll_interval,
            window_seconds=config.scheduler.window_seconds,
            stuck_alarm_seconds=config.scheduler.stuck_alarm_seconds,
            round_index=config.scheduler.round_index,
        )
    server = OracleHTTPServer(
        ReputationOracle(state),
        scheduler=scheduler,
        host=config.oracle.host,
        port=config.oracle.port,
    )

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    task = asyncio.ensure_future(scheduler.run() if scheduler is not None else shutdown.wait())
    signals_seen = 0

    def _signal_handler():
        nonlocal signals_seen
        signals_seen += 1
        if signals_seen == 1:
            # Let an in-flight submit/confirm cycle finish
            bt.logging.info({"publisher": "shutdown_signal_received"})
            shutdown.set()
            if scheduler is not None:
                scheduler.stop()
        else:
            bt.logging.warning({"publisher": "second signal, cancelling scheduler"})
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        await server.start()
        await task
    except asyncio.CancelledError:
        bt.logging.info({"publisher": "scheduler_cancelled"})
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if not task.done():
            task.cancel()
        await server.stop()
        await store.close()
        close = getattr(ledger, "close", None)
        if close is not None:
            await close()

    if scheduler is not None and scheduler.halted_reason:
        bt.logging.error({"publisher": {"halted": scheduler.halted_reason}})
        raise SystemExit(2)


def main() -> None:
    # Load .env if not in test mode
    if os.environ.get("REPMINER_TEST_MODE") != "true":
        load_dotenv()

    from repminer.base.config import build_parser, load_config

    parser = build_parser()
    args = parser.parse_args()
    bt.logging(config=bt.Config(parser))

    try:
        config = load_config(args)
    except ValidationError as e:
        bt.logging.error({"publisher_config": str(e)})
        sys.exit(1)

    bt.logging.info({"publisher_config": config.model_dump()})

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        bt.logging.info({"publisher": "keyboard_interrupt"})
    finally:
        bt.logging.info({"publisher": "stopped"})


if __name__ == "__main__":
    main()
