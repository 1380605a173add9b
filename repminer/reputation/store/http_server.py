"""HTTP endpoint serving reputation proofs.

Runs as an async task in the publisher's event loop. Routes:
  GET /status                                   - current version/root + scheduler state
  GET /{root}/{organization}/{skill_id}/{participant} - proof of a reputation value
"""

from __future__ import annotations

from typing import Any

import bittensor as bt
from aiohttp import web

from repminer.reputation.errors import StateCorruption
from repminer.reputation.oracle import NOT_FOUND_MESSAGE, ReputationOracle


def _short(value: str | None) -> str:
    """Truncate hex strings for log readability."""
    if not value:
        return "none"
    return value[:18]


class OracleHTTPServer:
    """Lightweight async HTTP server for reputation proofs."""

    def __init__(
        self,
        oracle: ReputationOracle,
        scheduler: Any = None,
        host: str = "0.0.0.0",
        port: int = 3000,
    ):
        self.oracle = oracle
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/{root}/{organization}/{skill_id}/{participant}", self._handle_proof)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"oracle_http": {"status": "started", "port": self.port}})

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"oracle_http": "stopped"})

    async def _handle_status(self, request: web.Request) -> web.Response:
        state = self.oracle.state
        body: dict[str, Any] = {
            "version": state.version,
            "root": "0x" + state.root.hex(),
            "watermark": state.watermark,
            "n_keys": state.n_keys,
            "halted": state.halted,
        }
        if self.scheduler is not None:
            body["scheduler"] = self.scheduler.status()
        return web.json_response(body)

    async def _handle_proof(self, request: web.Request) -> web.Response:
        root = request.match_info["root"]
        organization = request.match_info["organization"]
        skill_id = request.match_info["skill_id"]
        participant = request.match_info["participant"]

        if self.oracle.state.halted is not None:
            bt.logging.warning({"oracle_request": {"root": _short(root), "status": 503, "error": "halted"}})
            return web.json_response({"message": "reputation state unavailable"}, status=503)

        try:
            answer = await self.oracle.lookup(root, organization, skill_id, participant)
        except StateCorruption as e:
            bt.logging.error({"oracle_request": {"root": _short(root), "status": 500, "error": str(e)}})
            return web.json_response({"message": "reputation state unavailable"}, status=500)

        if not answer:
            bt.logging.info({
                "oracle_request": {
                    "root": _short(root),
                    "participant": _short(participant),
                    "status": 400,
                    "reason": answer.reason,
                }
            })
            return web.json_response({"message": NOT_FOUND_MESSAGE, "reason": answer.reason}, status=400)

        bt.logging.info({
            "oracle_request": {
                "root": _short(root),
                "participant": _short(participant),
                "status": 200,
                "version": answer.proof.version,
            }
        })
        return web.json_response(answer.proof.model_dump(mode="json", by_alias=True))


__all__ = ["OracleHTTPServer"]
