"""
Data model for the attestation relay.

Features:
- Proof bundles (opaque verifying key, proof and public inputs)
- Attestation lifecycle status with monotonic ordering
- Attestation handles populated asynchronously as a submission resolves
- Inclusion proofs validated at the RPC boundary
- Terminal relay outcomes
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .exceptions import InclusionProofFormatError

HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
HEX_PATTERN = re.compile(r"^0x[0-9a-fA-F]+$")


class ProofSystem(str, Enum):
    """Proof systems accepted by the attestation network."""
    RISC0 = "risc0"
    GROTH16 = "groth16"
    FFLONK = "fflonk"
    ULTRAPLONK = "ultraplonk"

    @property
    def pallet(self) -> str:
        """Settlement pallet that verifies this proof system."""
        return _SETTLEMENT_PALLETS[self]


_SETTLEMENT_PALLETS = {
    ProofSystem.RISC0: "SettlementRisc0Pallet",
    ProofSystem.GROTH16: "SettlementGroth16Pallet",
    ProofSystem.FFLONK: "SettlementFFlonkPallet",
    ProofSystem.ULTRAPLONK: "SettlementUltraplonkPallet",
}


PublicInputs = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class ProofBundle:
    """A proof produced upstream, passed by value into the session."""
    verifying_key: str
    proof: str
    public_inputs: PublicInputs
    proof_system: ProofSystem = ProofSystem.RISC0

    def __post_init__(self) -> None:
        if not self.verifying_key:
            raise ValueError("Proof bundle is missing the verifying key")
        if not self.proof:
            raise ValueError("Proof bundle is missing the proof")
        if not self.public_inputs:
            raise ValueError("Proof bundle is missing the public inputs")
        if isinstance(self.public_inputs, (list, tuple)):
            # Copy so the caller cannot mutate the bundle
            object.__setattr__(self, "public_inputs", tuple(self.public_inputs))
        if not isinstance(self.proof_system, ProofSystem):
            object.__setattr__(self, "proof_system", ProofSystem(self.proof_system))

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        proof_system: Optional[Union[ProofSystem, str]] = None,
    ) -> "ProofBundle":
        """Build a bundle from `{vk, proof, pub}` or long-form keys."""
        vk = data.get("vk", data.get("verifying_key"))
        proof = data.get("proof")
        pub = data.get("pub", data.get("public_inputs", data.get("publicSignals")))
        system = proof_system or data.get("proof_system") or ProofSystem.RISC0
        if vk is None or proof is None or pub is None:
            missing = [
                name for name, value in (("vk", vk), ("proof", proof), ("pub", pub))
                if value is None
            ]
            raise ValueError(f"Proof bundle is missing fields: {', '.join(missing)}")
        return cls(
            verifying_key=vk,
            proof=proof,
            public_inputs=pub,
            proof_system=ProofSystem(system),
        )

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        proof_system: Optional[Union[ProofSystem, str]] = None,
    ) -> "ProofBundle":
        """Load a bundle from a JSON document."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Proof bundle file {path} must contain a JSON object")
        return cls.from_dict(data, proof_system=proof_system)


class AttestationStatus(str, Enum):
    """Lifecycle of one submission on the attestation network."""
    SUBMITTED = "submitted"
    INCLUDED_IN_BLOCK = "included_in_block"
    FINALIZED = "finalized"
    SUBMISSION_FAILED = "submission_failed"  # Terminal

    @property
    def rank(self) -> int:
        """Position in the forward ordering (failure ranks with nothing)."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (AttestationStatus.FINALIZED, AttestationStatus.SUBMISSION_FAILED)


_STATUS_RANK = {
    AttestationStatus.SUBMITTED: 0,
    AttestationStatus.INCLUDED_IN_BLOCK: 1,
    AttestationStatus.FINALIZED: 2,
    AttestationStatus.SUBMISSION_FAILED: -1,
}


class SessionEventKind(str, Enum):
    """Named events emitted by an attestation session."""
    INCLUDED_IN_BLOCK = "includedInBlock"
    FINALIZED = "finalized"
    ERROR = "error"


@dataclass(frozen=True)
class SessionEvent:
    """A lifecycle event delivered by the attestation transport."""
    kind: SessionEventKind
    tx_hash: Optional[str] = None
    block_hash: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AttestationResult:
    """Resolved value of a submission's deferred result."""
    attestation_id: int
    leaf_digest: str

    def __post_init__(self) -> None:
        if self.attestation_id is None or self.leaf_digest is None:
            raise ValueError("Attestation result requires both attestation_id and leaf_digest")
        if isinstance(self.attestation_id, bool) or not isinstance(self.attestation_id, int):
            raise ValueError(f"attestation_id must be an integer, got {self.attestation_id!r}")
        if self.attestation_id < 0:
            raise ValueError(f"attestation_id must be non-negative, got {self.attestation_id}")
        if not isinstance(self.leaf_digest, str) or not HEX_PATTERN.match(self.leaf_digest):
            raise ValueError(f"leaf_digest must be a 0x-prefixed hex string, got {self.leaf_digest!r}")


@dataclass
class AttestationHandle:
    """
    Mutable record of one submission, filled in as it resolves.

    Undefined identifiers mean "not yet known". The handle is owned by the
    coordinator for the lifetime of one submission.
    """
    attestation_id: Optional[int] = None
    leaf_digest: Optional[str] = None
    status: AttestationStatus = AttestationStatus.SUBMITTED
    tx_hash: Optional[str] = None
    block_hash: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        """Both identifiers are known."""
        return self.attestation_id is not None and self.leaf_digest is not None

    @property
    def is_finalized(self) -> bool:
        return self.status == AttestationStatus.FINALIZED

    def resolve(self, result: AttestationResult) -> None:
        """Record the identifiers of a resolved submission."""
        self.attestation_id = result.attestation_id
        self.leaf_digest = result.leaf_digest
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def for_resume(cls, attestation_id: int, leaf_digest: str) -> "AttestationHandle":
        """Rebuild a finalized handle from persisted identifiers."""
        result = AttestationResult(attestation_id=attestation_id, leaf_digest=leaf_digest)
        handle = cls(status=AttestationStatus.FINALIZED)
        handle.resolve(result)
        return handle

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestation_id": self.attestation_id,
            "leaf_digest": self.leaf_digest,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "block_hash": self.block_hash,
            "errors": list(self.errors),
        }


def max_path_length(number_of_leaves: int) -> int:
    """Depth of a binary Merkle tree with the given number of leaves."""
    return (number_of_leaves - 1).bit_length()


@dataclass(frozen=True)
class InclusionProof:
    """
    Merkle inclusion proof for a finalized attestation.

    Path nodes must be full 32-byte hex hashes ("0x" + 64 hex digits).
    Short values such as "0x1" are rejected rather than left-padded: they
    are passed on as bytes32[] to proveGameWinner, and a padded node would
    not match the hash the attestation network committed to.
    """
    merkle_path: Tuple[str, ...]
    number_of_leaves: int
    leaf_index: int
    root: Optional[str] = None
    leaf: Optional[str] = None

    def __post_init__(self) -> None:
        path = tuple(self.merkle_path)
        object.__setattr__(self, "merkle_path", path)

        for name in ("number_of_leaves", "leaf_index"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InclusionProofFormatError(f"{name} must be an integer, got {value!r}")
        if self.number_of_leaves < 1:
            raise InclusionProofFormatError(
                f"number_of_leaves must be positive, got {self.number_of_leaves}"
            )
        if not 0 <= self.leaf_index < self.number_of_leaves:
            raise InclusionProofFormatError(
                f"leaf_index {self.leaf_index} out of range for {self.number_of_leaves} leaves"
            )
        if len(path) > max_path_length(self.number_of_leaves):
            raise InclusionProofFormatError(
                f"Merkle path of length {len(path)} is too long for "
                f"{self.number_of_leaves} leaves"
            )
        for i, node in enumerate(path):
            if not isinstance(node, str) or not HASH_PATTERN.match(node):
                raise InclusionProofFormatError(f"Merkle path element {i} is not a 32-byte hash: {node!r}")
        for name in ("root", "leaf"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, str) or not HASH_PATTERN.match(value)):
                raise InclusionProofFormatError(f"{name} is not a 32-byte hash: {value!r}")

    @classmethod
    def from_rpc(cls, payload: Any) -> "InclusionProof":
        """
        Parse a proof-of-existence response from the attestation network.

        Accepts snake_case (`number_of_leaves`) and camelCase
        (`numberOfLeaves`) keys. Raises InclusionProofFormatError for
        anything that is not a well-formed proof.
        """
        if not isinstance(payload, dict):
            raise InclusionProofFormatError(
                f"Expected an object from proof-of-existence query, got {type(payload).__name__}"
            )

        path = payload.get("proof", payload.get("merkle_path", payload.get("merkleProof")))
        leaves = payload.get("number_of_leaves", payload.get("numberOfLeaves"))
        index = payload.get("leaf_index", payload.get("leafIndex"))

        if not isinstance(path, (list, tuple)):
            raise InclusionProofFormatError(f"Merkle path must be a list, got {path!r}")
        if leaves is None or index is None:
            raise InclusionProofFormatError("Proof-of-existence response is missing leaf count or index")

        return cls(
            merkle_path=tuple(path),
            number_of_leaves=_as_int(leaves, "number_of_leaves"),
            leaf_index=_as_int(index, "leaf_index"),
            root=payload.get("root"),
            leaf=payload.get("leaf"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merkle_path": list(self.merkle_path),
            "number_of_leaves": self.number_of_leaves,
            "leaf_index": self.leaf_index,
            "root": self.root,
            "leaf": self.leaf,
        }


def _as_int(value: Any, name: str) -> int:
    """Accept JSON integers and hex/decimal strings from RPC payloads."""
    if isinstance(value, bool):
        raise InclusionProofFormatError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError:
            pass
    raise InclusionProofFormatError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class RelayOutcome:
    """Terminal record for one relay attempt."""
    transaction_hash: str
    accepted_on_chain: bool
    application_acknowledged: bool
    attestation_id: int
    inclusion_proof: InclusionProof
    block_number: Optional[int] = None
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not isinstance(self.inclusion_proof, InclusionProof):
            raise TypeError("RelayOutcome requires a complete InclusionProof")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "accepted_on_chain": self.accepted_on_chain,
            "application_acknowledged": self.application_acknowledged,
            "attestation_id": self.attestation_id,
            "block_number": self.block_number,
            "inclusion_proof": self.inclusion_proof.to_dict(),
            "completed_at": self.completed_at.isoformat(),
        }
