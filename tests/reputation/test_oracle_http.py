"""HTTP transport integration test.

Spins up a real OracleHTTPServer on localhost and fetches proofs with the
OracleClient, which replays every proof against the requested root.
"""

from __future__ import annotations

import asyncio
import tempfile
from unittest.mock import AsyncMock

import httpx
import pytest

from repminer.reputation.applier import ChangeLogApplier
from repminer.reputation.errors import StateCorruption
from repminer.reputation.models import ChangeLogEntry, ProofResponse
from repminer.reputation.oracle import NOT_FOUND_MESSAGE, ReputationOracle
from repminer.reputation.state import VersionedState
from repminer.reputation.store.filesystem import FilesystemVersionStore
from repminer.reputation.store.http_client import OracleClient, ProofVerificationError
from repminer.reputation.store.http_server import OracleHTTPServer

ORG = "0x" + "0c" * 20
ALICE = "0x" + "a1" * 20


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield d


async def _oracle(data_dir: str) -> ReputationOracle:
    state = VersionedState(FilesystemVersionStore(data_dir))
    await state.open()
    applier = ChangeLogApplier(state)
    await applier.apply_batch([
        ChangeLogEntry(organization=ORG, skill_id=2, participant=ALICE, delta=100, sequence=1),
    ])
    await applier.apply_batch([
        ChangeLogEntry(organization=ORG, skill_id=2, participant=ALICE, delta=-30, sequence=2),
    ])
    return ReputationOracle(state)


class _FakeScheduler:
    def status(self):
        return {"state": "Idle", "cycles": 3}


@pytest.mark.asyncio
@pytest.mark.integration
class TestOracleHTTP:

    async def test_proofs_for_current_and_past_roots(self, tmp_dir):
        oracle = await _oracle(tmp_dir)
        state = oracle.state
        root_v2 = "0x" + state.root.hex()
        root_v1 = "0x" + (await state.root_at(1)).hex()

        server = OracleHTTPServer(oracle, host="127.0.0.1", port=18941)
        try:
            await server.start()
            await asyncio.sleep(0.2)

            client = OracleClient("http://127.0.0.1:18941", timeout=10.0, max_retries=1)
            try:
                current = await client.get_proof(root_v2, ORG, 2, ALICE)
                assert current is not None
                assert current.derived_amount == "70"
                assert current.version == 2

                past = await client.get_proof(root_v1, ORG, 2, ALICE)
                assert past is not None
                assert past.derived_amount == "100"
                assert past.root == root_v1

                missing = await client.get_proof("0x" + "42" * 32, ORG, 2, ALICE)
                assert missing is None
            finally:
                await client.close()
        finally:
            await server.stop()

    async def test_400_body(self, tmp_dir):
        oracle = await _oracle(tmp_dir)
        server = OracleHTTPServer(oracle, host="127.0.0.1", port=18942)
        try:
            await server.start()
            await asyncio.sleep(0.2)

            async with httpx.AsyncClient() as http:
                resp = await http.get(f"http://127.0.0.1:18942/0x{'42' * 32}/{ORG}/2/{ALICE}")
                assert resp.status_code == 400
                assert resp.json() == {"message": NOT_FOUND_MESSAGE, "reason": "unknown_root"}

                resp = await http.get(f"http://127.0.0.1:18942/nonsense/{ORG}/2/{ALICE}")
                assert resp.status_code == 400
                assert resp.json()["reason"] == "invalid_request"

                other = "0x" + "ee" * 20
                root = "0x" + oracle.state.root.hex()
                resp = await http.get(f"http://127.0.0.1:18942/{root}/{ORG}/2/{other}")
                assert resp.status_code == 400
                assert resp.json()["reason"] == "key_not_found"
        finally:
            await server.stop()

    async def test_proof_body_fields(self, tmp_dir):
        oracle = await _oracle(tmp_dir)
        root = "0x" + oracle.state.root.hex()
        server = OracleHTTPServer(oracle, host="127.0.0.1", port=18943)
        try:
            await server.start()
            await asyncio.sleep(0.2)

            async with httpx.AsyncClient() as http:
                resp = await http.get(f"http://127.0.0.1:18943/{root}/{ORG}/2/{ALICE}")
            assert resp.status_code == 200
            body = resp.json()
            assert set(body) == {
                "branchMask", "siblings", "key", "value",
                "derivedAmount", "root", "version",
            }
            assert body["derivedAmount"] == "70"
            assert body["root"] == root
            assert not body["branchMask"].startswith("0x")

            parsed = ProofResponse(**body)
            assert parsed.derived_amount == "70"
            assert parsed.to_proof().verify(oracle.state.root)
        finally:
            await server.stop()

    async def test_status_and_corruption(self, tmp_dir):
        oracle = await _oracle(tmp_dir)
        root_v1 = "0x" + (await oracle.state.root_at(1)).hex()
        server = OracleHTTPServer(oracle, scheduler=_FakeScheduler(), host="127.0.0.1", port=18944)
        try:
            await server.start()
            await asyncio.sleep(0.2)

            async with httpx.AsyncClient() as http:
                resp = await http.get("http://127.0.0.1:18944/status")
                assert resp.status_code == 200
                status = resp.json()
                assert status["version"] == 2
                assert status["n_keys"] == 1
                assert status["halted"] is None
                assert status["scheduler"]["cycles"] == 3

                oracle.state.version_for_root = AsyncMock(side_effect=StateCorruption("bad"))
                resp = await http.get(f"http://127.0.0.1:18944/{root_v1}/{ORG}/2/{ALICE}")
                assert resp.status_code == 500

                oracle.state._halt("test")
                resp = await http.get(f"http://127.0.0.1:18944/{root_v1}/{ORG}/2/{ALICE}")
                assert resp.status_code == 503
        finally:
            await server.stop()

    async def test_client_rejects_forged_proof(self, tmp_dir):
        oracle = await _oracle(tmp_dir)
        root = "0x" + oracle.state.root.hex()
        server = OracleHTTPServer(oracle, host="127.0.0.1", port=18945)

        real_lookup = oracle.lookup

        async def forged(*args, **kwargs):
            answer = await real_lookup(*args, **kwargs)
            answer.proof.value = "0x" + "00" * 64
            return answer

        oracle.lookup = forged
        try:
            await server.start()
            await asyncio.sleep(0.2)

            client = OracleClient("http://127.0.0.1:18945", timeout=10.0, max_retries=1)
            try:
                with pytest.raises(ProofVerificationError):
                    await client.get_proof(root, ORG, 2, ALICE)
            finally:
                await client.close()
        finally:
            await server.stop()
