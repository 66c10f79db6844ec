"""
Tests for zkv_relay.coordinator.

Tests cover:
- End-to-end relay of a submitted proof
- Stage gating and ordering
- Submission failures never reaching retrieval
- Retrieval retries inside the relay
- Missing attestation roots
- At-most-once relay per attestation id
- Subscription cleanup on failure
- Acknowledgments tied to the relay transaction
- Destination chain failures carrying their stage
"""
from __future__ import annotations

import asyncio
import itertools
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode
from web3 import Web3

from conftest import (
    APP_CONTRACT,
    PATH_NODE_1,
    PATH_NODE_2,
    ROOT,
    TEST_CALLER,
    TEST_SECRET_KEY,
    TX_HASH,
    ZKV_CONTRACT,
    FakeTransport,
    posted_log,
    proof_payload,
)
from zkv_relay.contracts import (
    ATTESTATION_POSTED_TOPIC,
    PROOF_SUBMISSION_TOPIC,
    AttestationPosted,
)
from zkv_relay.coordinator import RelayCoordinator, _connect_destination
from zkv_relay.exceptions import (
    ConfigurationError,
    RelayError,
    RelayException,
    RelayTimeoutError,
    RetrievalError,
    SubmissionError,
)
from zkv_relay.models import AttestationHandle, AttestationResult, SessionEventKind
from zkv_relay.relay import CrossChainRelay
from zkv_relay.retriever import InclusionProofRetriever
from zkv_relay.rpc_client import AllEndpointsFailedError, ChainIDMismatchError, RPCError
from zkv_relay.session import AttestationSession
from zkv_relay.watcher import DestinationWatcher


def make_subscription(calls: List[str], name: str, value=None, error=None):
    subscription = MagicMock()

    async def wait(timeout_seconds):
        calls.append(f"{name}.wait")
        if error is not None:
            raise error
        return value

    subscription.wait = AsyncMock(side_effect=wait)
    subscription.cancel = MagicMock()
    return subscription


def make_pipeline(calls: List[str], posted_error=None, ack_error=None):
    posted = AttestationPosted(attestation_id=7, root=ROOT, block_number=100, transaction_hash="0x01")
    posted_sub = make_subscription(calls, "posted", value=posted, error=posted_error)
    ack_sub = make_subscription(calls, "ack", value={"transactionHash": TX_HASH}, error=ack_error)

    watcher = MagicMock()

    async def watch_posted(attestation_id):
        calls.append("watch_posted")
        return posted_sub

    async def watch_ack(winner, attestation_id=None):
        calls.append("watch_ack")
        return ack_sub

    watcher.watch_attestation_posted = AsyncMock(side_effect=watch_posted)
    watcher.watch_proof_acknowledged = AsyncMock(side_effect=watch_ack)

    relay = MagicMock()
    relay.address = TEST_CALLER

    async def broadcast(attestation_id, proof):
        calls.append("broadcast")
        return TX_HASH

    async def confirm(tx_hash, timeout_seconds=None, attestation_id=None):
        calls.append("confirm")
        return {"status": "0x1", "blockNumber": hex(101)}

    relay.broadcast = AsyncMock(side_effect=broadcast)
    relay.wait_for_confirmation = AsyncMock(side_effect=confirm)
    return watcher, relay, posted_sub, ack_sub


async def open_coordinator_for(transport, watcher, relay, fast_retrieval, fast_timeouts):
    session = await AttestationSession.start(transport)
    retriever = InclusionProofRetriever(session, fast_retrieval)
    coordinator = RelayCoordinator(session, retriever, relay, watcher, fast_timeouts)
    return session, coordinator


class TestRelayProof:
    """Tests for RelayCoordinator.relay_proof."""

    @pytest.mark.asyncio
    async def test_full_relay(self, bundle, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, posted_sub, ack_sub = make_pipeline(calls)
        transport = FakeTransport(result=AttestationResult(attestation_id=7, leaf_digest="0xabc"))
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            outcome = await coordinator.relay_proof(bundle)
        finally:
            await session.close()

        assert outcome.application_acknowledged is True
        assert outcome.accepted_on_chain is True
        assert outcome.transaction_hash == TX_HASH
        assert outcome.attestation_id == 7
        assert outcome.block_number == 101

        attestation_id, proof = relay.broadcast.await_args.args
        assert attestation_id == 7
        assert proof.merkle_path == (PATH_NODE_1, PATH_NODE_2)
        assert proof.number_of_leaves == 4
        assert proof.leaf_index == 2
        assert transport.proof_path_calls == [(7, "0xabc")]

        assert calls == [
            "watch_posted",
            "posted.wait",
            "watch_ack",
            "broadcast",
            "confirm",
            "ack.wait",
        ]
        watcher.watch_proof_acknowledged.assert_awaited_once_with(TEST_CALLER, attestation_id=7)
        ack_sub.expect_transaction.assert_called_once_with(TX_HASH)
        posted_sub.cancel.assert_called()
        ack_sub.cancel.assert_called()

    @pytest.mark.asyncio
    async def test_rejected_submission_never_retrieves(self, bundle, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        transport = FakeTransport(
            error=SubmissionError("Proof rejected by attestation network"),
            events=(),
        )
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(SubmissionError) as exc_info:
                await coordinator.relay_proof(bundle)
        finally:
            await session.close()

        assert not isinstance(exc_info.value, RetrievalError)
        assert transport.proof_path_calls == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_submission_result_timeout(self, bundle, fast_retrieval, fast_timeouts):
        fast_timeouts.attestation = 0.05
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        transport = FakeTransport(hang=True, events=(SessionEventKind.INCLUDED_IN_BLOCK,))
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(RelayTimeoutError) as exc_info:
                await coordinator.relay_proof(bundle)
        finally:
            await session.close()

        assert exc_info.value.stage == "attestation"
        assert transport.proof_path_calls == []

    @pytest.mark.asyncio
    async def test_retrieval_retries_inside_relay(self, bundle, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        transport = FakeTransport(responses=[
            ConnectionError("reset"),
            ConnectionError("reset"),
            ConnectionError("reset"),
            proof_payload(leaf_index=1),
        ])
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            outcome = await coordinator.relay_proof(bundle)
        finally:
            await session.close()

        assert len(transport.proof_path_calls) == 4
        assert outcome.inclusion_proof.leaf_index == 1

    @pytest.mark.asyncio
    async def test_root_never_posted(self, bundle, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        timeout = RelayTimeoutError(stage="attestation_posted", timeout_seconds=0.2, attestation_id=7)
        watcher, relay, posted_sub, _ = make_pipeline(calls, posted_error=timeout)
        session, coordinator = await open_coordinator_for(
            FakeTransport(), watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(TimeoutError):
                await coordinator.relay_proof(bundle)
        finally:
            await session.close()

        relay.broadcast.assert_not_awaited()
        watcher.watch_proof_acknowledged.assert_not_awaited()
        posted_sub.cancel.assert_called()


class TestResume:
    """Tests for RelayCoordinator.resume and relay serialization."""

    @pytest.mark.asyncio
    async def test_resume_starts_at_retrieval(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        transport = FakeTransport()
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            outcome = await coordinator.resume(7, "0xabc")
        finally:
            await session.close()

        assert transport.submitted == []
        assert transport.proof_path_calls == [(7, "0xabc")]
        assert outcome.application_acknowledged is True

    @pytest.mark.asyncio
    async def test_concurrent_relays_broadcast_once(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        session, coordinator = await open_coordinator_for(
            FakeTransport(), watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            first, second = await asyncio.gather(
                coordinator.resume(7, "0xabc"),
                coordinator.resume(7, "0xabc"),
            )
        finally:
            await session.close()

        assert relay.broadcast.await_count == 1
        assert first is second
        assert coordinator.outcome(7) is first

    @pytest.mark.asyncio
    async def test_unknown_delivery_is_not_rebroadcast(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, ack_sub = make_pipeline(calls)
        relay.broadcast = AsyncMock(
            side_effect=RelayError("Relay transaction broadcast failed", attestation_id=7, tx_hash=TX_HASH)
        )
        session, coordinator = await open_coordinator_for(
            FakeTransport(), watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(RelayError):
                await coordinator.resume(7, "0xabc")
            with pytest.raises(RelayError, match="already broadcast") as exc_info:
                await coordinator.resume(7, "0xabc")
        finally:
            await session.close()

        assert relay.broadcast.await_count == 1
        assert exc_info.value.tx_hash == TX_HASH
        ack_sub.cancel.assert_called()

    @pytest.mark.asyncio
    async def test_revert_before_broadcast_can_be_retried(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        relay.broadcast = AsyncMock(side_effect=[
            RelayError("proveGameWinner would revert", attestation_id=7, revert_reason="Invalid root"),
            TX_HASH,
        ])
        session, coordinator = await open_coordinator_for(
            FakeTransport(), watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(RelayError):
                await coordinator.resume(7, "0xabc")
            outcome = await coordinator.resume(7, "0xabc")
        finally:
            await session.close()

        assert outcome.transaction_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_acknowledgment_timeout(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        timeout = RelayTimeoutError(stage="acknowledgment", timeout_seconds=0.5, attestation_id=7)
        watcher, relay, _, ack_sub = make_pipeline(calls, ack_error=timeout)
        session, coordinator = await open_coordinator_for(
            FakeTransport(), watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(RelayTimeoutError) as exc_info:
                await coordinator.resume(7, "0xabc")
        finally:
            await session.close()

        assert exc_info.value.stage == "acknowledgment"
        assert coordinator.outcome(7) is None
        ack_sub.cancel.assert_called()

    @pytest.mark.asyncio
    async def test_incomplete_handle(self, fast_retrieval, fast_timeouts):
        calls: List[str] = []
        watcher, relay, _, _ = make_pipeline(calls)
        transport = FakeTransport()
        session, coordinator = await open_coordinator_for(
            transport, watcher, relay, fast_retrieval, fast_timeouts
        )

        try:
            with pytest.raises(SubmissionError):
                await coordinator._relay_attestation(AttestationHandle())
        finally:
            await session.close()

        assert transport.proof_path_calls == []


def destination_chain(mock_rpc, acknowledge=True):
    """Wire mock_rpc as a chain that posts roots and acknowledges sent relays."""
    sent: List[str] = []

    async def send_raw_transaction(raw):
        sent.append(Web3.to_hex(Web3.keccak(hexstr=raw)))

    def get_logs(params):
        topic = params["topics"][0]
        if topic == ATTESTATION_POSTED_TOPIC:
            return [posted_log(7), posted_log(7)]
        if topic == PROOF_SUBMISSION_TOPIC and acknowledge and sent:
            return [
                {"topics": params["topics"], "transactionHash": "0x" + "99" * 32, "blockNumber": "0x65"},
                {"topics": params["topics"], "transactionHash": sent[0], "blockNumber": "0x65"},
            ]
        return []

    mock_rpc.get_block_number = AsyncMock(side_effect=itertools.count(100))
    mock_rpc.get_logs = AsyncMock(side_effect=get_logs)
    mock_rpc.send_raw_transaction = AsyncMock(side_effect=send_raw_transaction)
    return sent


async def real_coordinator(mock_rpc, config):
    watcher = DestinationWatcher(mock_rpc, ZKV_CONTRACT, APP_CONTRACT, config.watcher)
    relay = CrossChainRelay(mock_rpc, APP_CONTRACT, TEST_SECRET_KEY, config)
    session = await AttestationSession.start(FakeTransport())
    coordinator = RelayCoordinator(
        session,
        InclusionProofRetriever(session, config.retrieval),
        relay,
        watcher,
        config.timeouts,
    )
    return session, watcher, coordinator


class TestEndToEnd:
    """Relay through the real watcher and relay over a mocked destination chain."""

    @pytest.mark.asyncio
    async def test_relay_over_destination_rpc(self, bundle, mock_rpc, fast_relay_config):
        sent = destination_chain(mock_rpc)
        session, watcher, coordinator = await real_coordinator(mock_rpc, fast_relay_config)

        try:
            outcome = await coordinator.relay_proof(bundle)
        finally:
            watcher.close()
            await session.close()

        assert outcome.application_acknowledged is True
        assert outcome.transaction_hash == sent[0]
        assert mock_rpc.send_raw_transaction.await_count == 1

        calldata = mock_rpc.estimate_gas.await_args.args[0]["data"]
        attestation_id, path, leaf_count, index = decode(
            ["uint256", "bytes32[]", "uint256", "uint256"], bytes.fromhex(calldata[10:])
        )
        assert attestation_id == 7
        assert [Web3.to_hex(node) for node in path] == [PATH_NODE_1, PATH_NODE_2]
        assert (leaf_count, index) == (4, 2)

    @pytest.mark.asyncio
    async def test_other_acknowledgments_do_not_count(self, mock_rpc, fast_relay_config):
        destination_chain(mock_rpc, acknowledge=False)
        other_ack = {
            "topics": [PROOF_SUBMISSION_TOPIC],
            "transactionHash": "0x" + "99" * 32,
            "blockNumber": "0x65",
        }
        mock_rpc.get_logs = AsyncMock(
            side_effect=lambda params: [posted_log(7)]
            if params["topics"][0] == ATTESTATION_POSTED_TOPIC
            else [other_ack]
        )
        session, watcher, coordinator = await real_coordinator(mock_rpc, fast_relay_config)

        try:
            with pytest.raises(RelayTimeoutError) as exc_info:
                await coordinator.resume(7, "0xabc")
        finally:
            watcher.close()
            await session.close()

        assert exc_info.value.stage == "acknowledgment"
        assert coordinator.outcome(7) is None

    @pytest.mark.asyncio
    async def test_rejected_retry_is_never_rebroadcast(self, mock_rpc, fast_relay_config):
        destination_chain(mock_rpc)
        mock_rpc.send_raw_transaction = AsyncMock(side_effect=[
            AllEndpointsFailedError([("rpc", "timeout")], timed_out=True),
            RPCError("nonce too low", code=-32000),
            None,
        ])
        mock_rpc.get_transaction_receipt = AsyncMock(return_value=None)
        session, watcher, coordinator = await real_coordinator(mock_rpc, fast_relay_config)

        try:
            with pytest.raises(RelayError) as first:
                await coordinator.resume(7, "0xabc")
            with pytest.raises(RelayError, match="already broadcast") as second:
                await coordinator.resume(7, "0xabc")
        finally:
            watcher.close()
            await session.close()

        assert first.value.revert_reason is None
        assert second.value.tx_hash == first.value.tx_hash
        signed = {call.args[0] for call in mock_rpc.send_raw_transaction.await_args_list}
        assert len(signed) == 1
        assert mock_rpc.send_raw_transaction.await_count == 2

    @pytest.mark.asyncio
    async def test_unreachable_chain_carries_stage(self, mock_rpc, fast_relay_config):
        destination_chain(mock_rpc)
        mock_rpc.estimate_gas = AsyncMock(
            side_effect=AllEndpointsFailedError([("rpc", "timeout")], timed_out=True)
        )
        session, watcher, coordinator = await real_coordinator(mock_rpc, fast_relay_config)

        try:
            with pytest.raises(RelayException) as first:
                await coordinator.resume(7, "0xabc")
            mock_rpc.estimate_gas = AsyncMock(return_value=100_000)
            outcome = await coordinator.resume(7, "0xabc")
        finally:
            watcher.close()
            await session.close()

        assert isinstance(first.value, RelayError)
        assert first.value.stage == "relay"
        assert first.value.attestation_id == 7
        assert outcome.application_acknowledged is True


class TestConnectDestination:
    """Tests for destination chain connection errors."""

    @pytest.mark.asyncio
    async def test_chain_id_mismatch(self):
        rpc = MagicMock()
        rpc.connect = AsyncMock(side_effect=ChainIDMismatchError(expected=11155111, received=1))

        with pytest.raises(ConfigurationError, match="11155111"):
            await _connect_destination(rpc)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        rpc = MagicMock()
        rpc.connect = AsyncMock(side_effect=AllEndpointsFailedError([("rpc", "refused")]))

        with pytest.raises(RelayError) as exc_info:
            await _connect_destination(rpc)

        assert exc_info.value.stage == "connect"
        assert isinstance(exc_info.value.cause, AllEndpointsFailedError)
