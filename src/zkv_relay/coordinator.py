"""
Relay coordinator.

Sequences one proof from submission on the attestation network to
acknowledgment by the application contract:

    submit -> included -> finalized -> inclusion proof
           -> AttestationPosted observed -> proveGameWinner
           -> receipt -> SuccessfulProofSubmission observed

Each stage starts only after the previous stage's terminal event. Every wait
is bounded and every failure carries its stage and attestation id.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .config import RelayConfig, RelaySettings, TimeoutConfig, build_endpoints
from .dispatcher import EventDispatcher
from .exceptions import ConfigurationError, RelayError, RelayTimeoutError
from .logging_config import log_stage, set_attestation_context
from .models import AttestationHandle, InclusionProof, ProofBundle, RelayOutcome
from .relay import CrossChainRelay
from .retriever import InclusionProofRetriever
from .rpc_client import AllEndpointsFailedError, ChainIDMismatchError, EvmRPCClient, RPCError
from .session import AttestationSession
from .substrate_transport import ZkVerifyTransport
from .watcher import DestinationWatcher, LogSubscription

logger = logging.getLogger(__name__)


class RelayCoordinator:
    """Drives proofs through the full attestation relay."""

    def __init__(
        self,
        session: AttestationSession,
        retriever: InclusionProofRetriever,
        relay: CrossChainRelay,
        watcher: DestinationWatcher,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self._session = session
        self._retriever = retriever
        self._relay = relay
        self._watcher = watcher
        self._timeouts = timeouts or TimeoutConfig()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._outcomes: Dict[int, RelayOutcome] = {}
        self._broadcasts: Dict[int, str] = {}

    async def relay_proof(self, bundle: ProofBundle) -> RelayOutcome:
        """
        Submit a proof and relay its attestation to the destination chain.

        Raises:
            SubmissionError: If the attestation network rejects the proof.
                No retrieval is attempted.
            RelayTimeoutError: If a stage does not complete within its bound
            RetrievalError: If the inclusion proof cannot be retrieved
            RelayError: If the relay transaction is rejected or reverts
        """
        handle = AttestationHandle()
        dispatcher = EventDispatcher(handle)

        async with log_stage("submission"):
            submission = await self._session.verify(bundle)
            dispatcher.attach(submission.events)
            dispatcher.observe_result(submission.result)
            try:
                try:
                    result = await asyncio.wait_for(
                        asyncio.shield(submission.result),
                        timeout=self._timeouts.attestation,
                    )
                except asyncio.TimeoutError:
                    submission.cancel()
                    raise RelayTimeoutError(
                        stage="attestation",
                        timeout_seconds=self._timeouts.attestation,
                        message=f"Submission result not received within {self._timeouts.attestation}s",
                    )

                handle.resolve(result)
                set_attestation_context(result.attestation_id)
                await dispatcher.wait_for_finalization(self._timeouts.finalization)
            finally:
                dispatcher.detach()

        return await self._relay_attestation(handle)

    async def resume(self, attestation_id: int, leaf_digest: str) -> RelayOutcome:
        """Re-enter at retrieval for a finalized attestation from a previous run."""
        handle = AttestationHandle.for_resume(attestation_id, leaf_digest)
        logger.info(f"Resuming relay of attestation {attestation_id}")
        return await self._relay_attestation(handle)

    async def _relay_attestation(self, handle: AttestationHandle) -> RelayOutcome:
        if not handle.is_complete:
            # Raises SubmissionError without querying
            await self._retriever.fetch(handle)

        attestation_id = handle.attestation_id
        lock = self._locks.setdefault(attestation_id, asyncio.Lock())
        async with lock:
            completed = self._outcomes.get(attestation_id)
            if completed is not None:
                logger.info(
                    f"Attestation {attestation_id} already relayed in {completed.transaction_hash}"
                )
                return completed

            pending_tx = self._broadcasts.get(attestation_id)
            if pending_tx is not None:
                raise RelayError(
                    f"Attestation {attestation_id} was already broadcast in {pending_tx} "
                    f"without completing; check the transaction before relaying again",
                    attestation_id=attestation_id,
                    tx_hash=pending_tx,
                )

            set_attestation_context(attestation_id)
            subscriptions: List[LogSubscription] = []
            try:
                async with log_stage("retrieval", attestation_id):
                    proof = await self._retriever.fetch(handle)

                async with log_stage("attestation_posted", attestation_id):
                    posted_sub = await self._watcher.watch_attestation_posted(attestation_id)
                    subscriptions.append(posted_sub)
                    posted = await posted_sub.wait(self._timeouts.attestation_posted)
                if proof.root and posted.root != proof.root.lower():
                    logger.warning(
                        f"Posted root {posted.root} differs from inclusion proof root {proof.root}"
                    )

                ack_sub = await self._watcher.watch_proof_acknowledged(
                    self._relay.address, attestation_id=attestation_id
                )
                subscriptions.append(ack_sub)

                async with log_stage("relay", attestation_id):
                    tx_hash = await self._broadcast(attestation_id, proof)
                    ack_sub.expect_transaction(tx_hash)
                    receipt = await self._relay.wait_for_confirmation(
                        tx_hash,
                        timeout_seconds=self._timeouts.relay_confirmation,
                        attestation_id=attestation_id,
                    )

                async with log_stage("acknowledgment", attestation_id):
                    await ack_sub.wait(self._timeouts.acknowledgment)

                outcome = RelayOutcome(
                    transaction_hash=tx_hash,
                    accepted_on_chain=True,
                    application_acknowledged=True,
                    attestation_id=attestation_id,
                    inclusion_proof=proof,
                    block_number=int(receipt.get("blockNumber", "0x0"), 16),
                )
                self._outcomes[attestation_id] = outcome
                logger.info(f"Relay of attestation {attestation_id} acknowledged by the application")
                return outcome
            finally:
                for subscription in subscriptions:
                    subscription.cancel()

    async def _broadcast(self, attestation_id: int, proof: InclusionProof) -> str:
        try:
            tx_hash = await self._relay.broadcast(attestation_id, proof)
        except RelayError as e:
            if e.tx_hash and e.revert_reason is None:
                # Delivery unknown
                self._broadcasts[attestation_id] = e.tx_hash
            raise

        self._broadcasts[attestation_id] = tx_hash
        logger.info(f"Relay transaction sent: {tx_hash}")
        return tx_hash

    def outcome(self, attestation_id: int) -> Optional[RelayOutcome]:
        """Outcome of a relay completed in this process."""
        return self._outcomes.get(attestation_id)


@asynccontextmanager
async def open_coordinator(
    settings: RelaySettings,
    config: Optional[RelayConfig] = None,
) -> AsyncIterator[RelayCoordinator]:
    """
    Wire the production clients from settings.

    Usage:
        async with open_coordinator(get_settings()) as coordinator:
            outcome = await coordinator.relay_proof(bundle)
    """
    settings.require_complete()
    config = config or RelayConfig()

    transport = ZkVerifyTransport(
        url=settings.zkv_rpc_url,
        seed_phrase=settings.zkv_seed_phrase,
        finalization_poll_interval_seconds=config.finalization_poll_interval_seconds,
        attestation_timeout_seconds=config.timeouts.attestation,
        wait_for_published_attestation=config.wait_for_published_attestation,
    )
    session = await AttestationSession.start(transport, config.timeouts.session_connect)
    rpc = EvmRPCClient(
        build_endpoints(settings.eth_rpc_urls),
        expected_chain_id=settings.eth_chain_id,
    )
    watcher = DestinationWatcher(
        rpc,
        zkverify_contract=settings.eth_zkverify_contract_address,
        app_contract=settings.eth_app_contract_address,
        config=config.watcher,
    )
    try:
        await _connect_destination(rpc)
        relay = CrossChainRelay(
            rpc,
            app_contract=settings.eth_app_contract_address,
            secret_key=settings.eth_secret_key,
            config=config,
        )
        yield RelayCoordinator(
            session=session,
            retriever=InclusionProofRetriever(session, config.retrieval),
            relay=relay,
            watcher=watcher,
            timeouts=config.timeouts,
        )
    finally:
        watcher.close()
        await rpc.close()
        await session.close()


async def _connect_destination(rpc: EvmRPCClient) -> None:
    try:
        await rpc.connect()
    except ChainIDMismatchError as e:
        raise ConfigurationError(
            f"ETH_RPC_URL serves chain {e.received}, ETH_CHAIN_ID expects {e.expected}"
        ) from e
    except (RPCError, AllEndpointsFailedError) as e:
        raise RelayError(
            f"Could not connect to the destination chain: {e}",
            stage="connect",
            cause=e,
        ) from e
