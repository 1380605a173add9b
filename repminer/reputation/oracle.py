"""Proof oracle: answers "prove key K under root R" for current and past roots.

Unknown roots, absent keys and malformed requests are all legitimate
"not found" answers rather than faults; the reason is kept on the answer
for logging. StateCorruption is not caught here.
"""

from __future__ import annotations

from dataclasses import dataclass

import bittensor as bt

from .errors import InvalidRequest, KeyNotFound, VersionNotFound
from .keys import derive_key, parse_digest
from .models import ProofResponse
from .state import VersionedState

NOT_FOUND_MESSAGE = "Requested reputation does not exist or invalid request"


@dataclass
class OracleAnswer:
    """Outcome of a proof lookup."""

    proof: ProofResponse | None
    reason: str = ""
    detail: str = ""

    def __bool__(self) -> bool:
        return self.proof is not None


class ReputationOracle:
    """Read-only proof service over a VersionedState."""

    def __init__(self, state: VersionedState):
        self.state = state

    async def lookup(
        self,
        root: str,
        organization: str,
        skill_id: int | str,
        participant: str,
    ) -> OracleAnswer:
        try:
            root_bytes = parse_digest(root)
            key = derive_key(organization, skill_id, participant)
        except InvalidRequest as e:
            return OracleAnswer(proof=None, reason="invalid_request", detail=str(e))

        try:
            if root_bytes == self.state.root:
                version = self.state.version
            else:
                version = await self.state.version_for_root(root_bytes)
            proof = await self.state.prove(key, version)
        except VersionNotFound as e:
            return OracleAnswer(proof=None, reason="unknown_root", detail=str(e))
        except KeyNotFound as e:
            return OracleAnswer(proof=None, reason="key_not_found", detail=str(e))

        bt.logging.debug({"oracle": {"event": "proof_served", "version": version, "key": key.hex()[:16]}})
        return OracleAnswer(proof=ProofResponse.from_proof(proof, root_bytes, version))


__all__ = ["NOT_FOUND_MESSAGE", "OracleAnswer", "ReputationOracle"]
