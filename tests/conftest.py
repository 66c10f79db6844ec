"""
Pytest configuration for zkv-relay tests.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

from zkv_relay.config import (
    RelayConfig,
    RetrievalConfig,
    TimeoutConfig,
    WatcherConfig,
)
from zkv_relay.models import (
    AttestationResult,
    ProofBundle,
    SessionEvent,
    SessionEventKind,
)
from zkv_relay.session import AttestationTransport

# Hardhat account #0
TEST_SECRET_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_CALLER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

APP_CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ZKV_CONTRACT = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"

PATH_NODE_1 = "0x" + "11" * 32
PATH_NODE_2 = "0x" + "22" * 32
ROOT = "0x" + "ab" * 32
TX_HASH = "0x" + "cd" * 32


def proof_payload(
    path: Sequence[str] = (PATH_NODE_1, PATH_NODE_2),
    number_of_leaves: int = 4,
    leaf_index: int = 2,
    **extra: Any,
) -> Dict[str, Any]:
    """A poe_proofPath style response."""
    payload = {
        "proof": list(path),
        "number_of_leaves": number_of_leaves,
        "leaf_index": leaf_index,
    }
    payload.update(extra)
    return payload


def posted_log(attestation_id: int, root: str = ROOT, block_number: int = 100) -> Dict[str, Any]:
    """An AttestationPosted log as returned by eth_getLogs."""
    from zkv_relay.contracts import ATTESTATION_POSTED_TOPIC, uint256_topic

    return {
        "address": ZKV_CONTRACT,
        "topics": [ATTESTATION_POSTED_TOPIC, uint256_topic(attestation_id), root],
        "data": "0x",
        "blockNumber": hex(block_number),
        "transactionHash": "0x" + "ef" * 32,
        "logIndex": "0x0",
    }


class FakeTransport(AttestationTransport):
    """In-memory attestation network."""

    def __init__(
        self,
        result: Optional[AttestationResult] = None,
        error: Optional[BaseException] = None,
        events: Sequence[SessionEventKind] = (
            SessionEventKind.INCLUDED_IN_BLOCK,
            SessionEventKind.FINALIZED,
        ),
        responses: Optional[List[Any]] = None,
        connect_error: Optional[BaseException] = None,
        hang: bool = False,
    ):
        self.result = result or AttestationResult(attestation_id=7, leaf_digest="0xabc")
        self.error = error
        self.events = list(events)
        self.responses = list(responses) if responses is not None else [proof_payload()]
        self.connect_error = connect_error
        self.hang = hang
        self.connected = False
        self.closed = False
        self.submitted: List[ProofBundle] = []
        self.proof_path_calls: List[tuple] = []

    async def connect(self) -> str:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"

    async def submit_proof(self, bundle, emit) -> AttestationResult:
        self.submitted.append(bundle)
        for kind in self.events:
            emit(SessionEvent(kind=kind, tx_hash="0xfeed", block_hash="0xbeef"))
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.result

    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        self.proof_path_calls.append((attestation_id, leaf_digest))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def bundle():
    """A minimal proof bundle."""
    return ProofBundle(verifying_key="0x01", proof="0x02", public_inputs="0x03")


@pytest.fixture
def fast_retrieval():
    return RetrievalConfig(
        max_attempts=5,
        base_delay_seconds=0.001,
        max_delay_seconds=0.01,
        jitter=0.0,
        request_timeout_seconds=1.0,
    )


@pytest.fixture
def fast_timeouts():
    return TimeoutConfig(
        session_connect=1.0,
        attestation=1.0,
        finalization=0.5,
        attestation_posted=0.2,
        relay_confirmation=0.5,
        acknowledgment=0.5,
    )


@pytest.fixture
def fast_relay_config(fast_retrieval, fast_timeouts):
    return RelayConfig(
        retrieval=fast_retrieval,
        timeouts=fast_timeouts,
        watcher=WatcherConfig(poll_interval_seconds=0.01, lookback_blocks=50),
        receipt_poll_interval_seconds=0.01,
        finalization_poll_interval_seconds=0.01,
    )


@pytest.fixture
def mock_rpc():
    """EvmRPCClient double with a static chain."""
    rpc = MagicMock()
    rpc.get_block_number = AsyncMock(return_value=100)
    rpc.get_logs = AsyncMock(return_value=[])
    rpc.get_chain_id = AsyncMock(return_value=31337)
    rpc.get_nonce = AsyncMock(return_value=5)
    rpc.estimate_gas = AsyncMock(return_value=100_000)
    rpc.get_base_fee = AsyncMock(return_value=1_000_000_000)
    rpc.get_max_priority_fee = AsyncMock(return_value=2_000_000_000)
    rpc.get_gas_price = AsyncMock(return_value=3_000_000_000)
    rpc.send_raw_transaction = AsyncMock(side_effect=lambda raw: None)
    rpc.get_transaction_receipt = AsyncMock(
        return_value={"status": "0x1", "blockNumber": hex(101), "transactionHash": TX_HASH}
    )
    rpc.eth_call = AsyncMock(return_value="0x")
    return rpc
