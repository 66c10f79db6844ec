"""
Inclusion proof retrieval from the attestation network.

Features:
- Guards against incomplete or non-finalized attestation handles
- Bounded exponential backoff for transient RPC failures
- Payload validation at the RPC boundary
- Per-attestation caching so repeated queries return identical proofs
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Protocol, Tuple

from .config import RetrievalConfig
from .exceptions import (
    AttestationStateError,
    InclusionProofFormatError,
    RetrievalError,
    SessionError,
    SubmissionError,
)
from .models import AttestationHandle, AttestationStatus, InclusionProof
from .retry import RetryConfig, RetryExhausted, retry_async

logger = logging.getLogger(__name__)


class ProofOfExistenceSource(Protocol):
    async def proof_of_existence(self, attestation_id: int, leaf_digest: str) -> dict:
        ...


class InclusionProofRetriever:
    """Fetches Merkle inclusion proofs for finalized attestations."""

    def __init__(
        self,
        source: ProofOfExistenceSource,
        config: Optional[RetrievalConfig] = None,
    ):
        self._source = source
        self._config = config or RetrievalConfig()
        self._cache: Dict[Tuple[int, str], InclusionProof] = {}
        self._retry_config = RetryConfig(
            max_retries=self._config.max_attempts - 1,
            base_delay=self._config.base_delay_seconds,
            max_delay=self._config.max_delay_seconds,
            jitter=self._config.jitter,
            non_retryable_exceptions=(InclusionProofFormatError, SessionError),
        )

    async def fetch(self, handle: AttestationHandle) -> InclusionProof:
        """
        Retrieve the inclusion proof for a finalized attestation.

        Raises:
            SubmissionError: If the handle never received its identifiers
                (the submission's deferred result rejected)
            AttestationStateError: If the attestation is not finalized yet
            InclusionProofFormatError: If the network returned a malformed proof
            RetrievalError: If every attempt failed
        """
        if not handle.is_complete:
            raise SubmissionError(
                "Cannot retrieve an inclusion proof: attestation id or leaf digest "
                "is undefined because the submission did not resolve",
                stage="retrieval",
                attestation_id=handle.attestation_id,
            )
        if handle.status != AttestationStatus.FINALIZED:
            raise AttestationStateError(
                f"Inclusion proof requested for attestation in status {handle.status.value}",
                attestation_id=handle.attestation_id,
            )

        key = (handle.attestation_id, handle.leaf_digest)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            proof = await retry_async(
                self._query,
                handle.attestation_id,
                handle.leaf_digest,
                config=self._retry_config,
            )
        except RetryExhausted as e:
            raise RetrievalError(
                f"Proof-of-existence query failed after {e.stats.attempts} attempts: "
                f"{e.original_exception}",
                attempts=e.stats.attempts,
                attestation_id=handle.attestation_id,
                cause=e.original_exception,
            ) from e.original_exception
        except InclusionProofFormatError as e:
            e.attestation_id = handle.attestation_id
            raise

        self._cache[key] = proof
        logger.info(
            f"Merkle proof details: path_length={len(proof.merkle_path)}, "
            f"number_of_leaves={proof.number_of_leaves}, leaf_index={proof.leaf_index}"
        )
        return proof

    async def _query(self, attestation_id: int, leaf_digest: str) -> InclusionProof:
        payload = await asyncio.wait_for(
            self._source.proof_of_existence(attestation_id, leaf_digest),
            timeout=self._config.request_timeout_seconds,
        )
        return InclusionProof.from_rpc(payload)
