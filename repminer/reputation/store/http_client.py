"""HTTP client for the reputation oracle.

Fetches proofs and checks them locally before handing them to the caller,
so a misbehaving oracle can never pass off a proof that does not replay to
the root that was asked for.
"""

from __future__ import annotations

import asyncio
from typing import Any

import bittensor as bt
import httpx

from repminer.reputation.keys import parse_digest
from repminer.reputation.models import ProofResponse


class ProofVerificationError(Exception):
    """The oracle returned a proof that does not match the requested root."""


class OracleClient:
    """Consumer-side client for OracleHTTPServer."""

    def __init__(
        self,
        oracle_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.oracle_url = oracle_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        """GET with retry on transport errors."""
        for attempt in range(self._max_retries):
            try:
                return await self._client.get(f"{self.oracle_url}{path}")
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise
                wait = 2 ** attempt
                bt.logging.warning({"oracle_client": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
        raise ConnectionError("Max retries exceeded")

    async def get_proof(
        self,
        root: str,
        organization: str,
        skill_id: int | str,
        participant: str,
    ) -> ProofResponse | None:
        """Fetch and verify a proof. Returns None when the oracle has no answer."""
        root_bytes = parse_digest(root)
        resp = await self._get(f"/0x{root_bytes.hex()}/{organization}/{skill_id}/{participant}")
        if resp.status_code == 400:
            return None
        resp.raise_for_status()

        proof = ProofResponse(**resp.json())
        try:
            valid = proof.to_proof().verify(root_bytes)
        except ValueError as e:
            raise ProofVerificationError(f"malformed proof: {e}") from e
        if not valid:
            raise ProofVerificationError(f"proof does not replay to root 0x{root_bytes.hex()}")
        return proof

    async def get_status(self) -> dict[str, Any]:
        resp = await self._get("/status")
        resp.raise_for_status()
        return resp.json()


__all__ = ["OracleClient", "ProofVerificationError"]
