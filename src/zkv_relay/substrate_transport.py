"""zkVerify attestation network transport built on substrate-interface."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from .exceptions import RelayTimeoutError, SessionError, SubmissionError
from .models import AttestationResult, ProofBundle, SessionEvent, SessionEventKind
from .session import AttestationTransport, EmitCallback

logger = logging.getLogger(__name__)

POE_MODULE = "Poe"
NEW_ELEMENT_EVENT = "NewElement"
NEW_ATTESTATION_EVENT = "NewAttestation"
PROOF_PATH_METHOD = "poe_proofPath"


def _event_parts(record: Any) -> Tuple[str, str, Dict[str, Any]]:
    """Return (module, event, attributes) of a substrate event record."""
    value = getattr(record, "value", record) or {}
    event = value.get("event", value)
    module_id = event.get("module_id", value.get("module_id", ""))
    event_id = event.get("event_id", value.get("event_id", ""))
    attributes = event.get("attributes", value.get("attributes")) or {}
    return module_id, event_id, attributes


def find_new_element(events: Iterable[Any]) -> Optional[AttestationResult]:
    """Extract the leaf digest and pending attestation id from Poe.NewElement."""
    for record in events:
        module_id, event_id, attributes = _event_parts(record)
        if module_id == POE_MODULE and event_id == NEW_ELEMENT_EVENT:
            return AttestationResult(
                attestation_id=int(attributes["attestation_id"]),
                leaf_digest=str(attributes["value"]),
            )
    return None


def has_new_attestation(events: Iterable[Any], attestation_id: int) -> bool:
    for record in events:
        module_id, event_id, attributes = _event_parts(record)
        if module_id == POE_MODULE and event_id == NEW_ATTESTATION_EVENT:
            if int(attributes.get("id", -1)) == attestation_id:
                return True
    return False


class ZkVerifyTransport(AttestationTransport):
    """
    Production transport for the zkVerify attestation network.

    The substrate client is blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        url: str,
        seed_phrase: str,
        finalization_poll_interval_seconds: float = 2.0,
        attestation_timeout_seconds: float = 900.0,
        wait_for_published_attestation: bool = True,
    ):
        self._url = url
        self._seed_phrase = seed_phrase
        self._poll_interval = finalization_poll_interval_seconds
        self._attestation_timeout = attestation_timeout_seconds
        self._wait_for_published = wait_for_published_attestation
        self._substrate = None
        self._keypair = None

    async def connect(self) -> str:
        from substrateinterface import Keypair, SubstrateInterface

        if not self._url:
            raise SessionError("Attestation network RPC URL is not configured")
        if not self._seed_phrase:
            raise SessionError("Attestation network seed phrase is not configured")

        self._keypair = Keypair.create_from_mnemonic(self._seed_phrase)
        self._substrate = await asyncio.to_thread(SubstrateInterface, url=self._url)
        logger.info(f"Connected to attestation network at {self._url}")
        return self._keypair.ss58_address

    def _client(self):
        if self._substrate is None:
            raise SessionError("Attestation transport is not connected")
        return self._substrate

    async def submit_proof(
        self,
        bundle: ProofBundle,
        emit: EmitCallback,
    ) -> AttestationResult:
        substrate = self._client()
        pubs = bundle.public_inputs
        if isinstance(pubs, tuple):
            pubs = list(pubs)

        call = await asyncio.to_thread(
            substrate.compose_call,
            call_module=bundle.proof_system.pallet,
            call_function="submit_proof",
            call_params={
                "vk_or_hash": {"Vk": bundle.verifying_key},
                "proof": bundle.proof,
                "pubs": pubs,
            },
        )
        extrinsic = await asyncio.to_thread(
            substrate.create_signed_extrinsic, call=call, keypair=self._keypair
        )
        receipt = await asyncio.to_thread(
            substrate.submit_extrinsic, extrinsic, wait_for_inclusion=True
        )

        if not receipt.is_success:
            raise SubmissionError(f"Proof rejected by attestation network: {receipt.error_message}")

        emit(SessionEvent(
            kind=SessionEventKind.INCLUDED_IN_BLOCK,
            tx_hash=receipt.extrinsic_hash,
            block_hash=receipt.block_hash,
        ))

        result = find_new_element(receipt.triggered_events)
        if result is None:
            raise SubmissionError(
                f"Extrinsic {receipt.extrinsic_hash} did not produce a {POE_MODULE}.{NEW_ELEMENT_EVENT} event"
            )

        await self._wait_for_finalization(receipt.block_hash)
        emit(SessionEvent(kind=SessionEventKind.FINALIZED, block_hash=receipt.block_hash))

        if self._wait_for_published:
            await self._wait_for_attestation(result.attestation_id, receipt.block_hash)

        return result

    async def _wait_for_finalization(self, block_hash: str) -> None:
        substrate = self._client()
        included_at = await asyncio.to_thread(substrate.get_block_number, block_hash)

        while True:
            head = await asyncio.to_thread(substrate.get_chain_finalised_head)
            finalized_at = await asyncio.to_thread(substrate.get_block_number, head)
            if finalized_at >= included_at:
                logger.debug(f"Block {block_hash} finalized (head #{finalized_at})")
                return
            await asyncio.sleep(self._poll_interval)

    async def _wait_for_attestation(self, attestation_id: int, from_block_hash: str) -> None:
        """Scan finalized blocks until Poe.NewAttestation is published for the id."""
        substrate = self._client()
        next_block = await asyncio.to_thread(substrate.get_block_number, from_block_hash)
        deadline = asyncio.get_running_loop().time() + self._attestation_timeout

        while True:
            head = await asyncio.to_thread(substrate.get_chain_finalised_head)
            finalized_at = await asyncio.to_thread(substrate.get_block_number, head)

            while next_block <= finalized_at:
                block_hash = await asyncio.to_thread(substrate.get_block_hash, next_block)
                events = await asyncio.to_thread(substrate.get_events, block_hash)
                if has_new_attestation(events, attestation_id):
                    logger.info(f"Attestation {attestation_id} published in block #{next_block}")
                    return
                next_block += 1

            if asyncio.get_running_loop().time() > deadline:
                raise RelayTimeoutError(
                    stage="attestation",
                    timeout_seconds=self._attestation_timeout,
                    attestation_id=attestation_id,
                )
            await asyncio.sleep(self._poll_interval)

    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        substrate = self._client()
        response = await asyncio.to_thread(
            substrate.rpc_request, PROOF_PATH_METHOD, [attestation_id, leaf_digest]
        )
        return response.get("result")

    async def close(self) -> None:
        if self._substrate is not None:
            await asyncio.to_thread(self._substrate.close)
            self._substrate = None
