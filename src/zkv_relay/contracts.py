"""
Destination chain contract interfaces.

Covers the attestation contract, which posts Merkle roots relayed from the
attestation network, and the application contract, which verifies inclusion
proofs against those roots.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .models import HASH_PATTERN, InclusionProof

# ============ ABIs ============

ZKVERIFY_CONTRACT_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "AttestationPosted",
        "anonymous": False,
        "inputs": [
            {"name": "attestationId", "type": "uint256", "indexed": True},
            {"name": "root", "type": "bytes32", "indexed": True},
        ],
    },
]

APP_CONTRACT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "proveGameWinner",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "attestationId", "type": "uint256"},
            {"name": "merklePath", "type": "bytes32[]"},
            {"name": "leafCount", "type": "uint256"},
            {"name": "index", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "SuccessfulProofSubmission",
        "anonymous": False,
        "inputs": [
            {"name": "winner", "type": "string", "indexed": True},
        ],
    },
]

# ============ Signatures ============

def abi_signature(abi: List[Dict[str, Any]], name: str) -> str:
    """Canonical signature of an ABI entry, e.g. "Transfer(address,uint256)"."""
    for entry in abi:
        if entry.get("name") == name:
            types = ",".join(arg["type"] for arg in entry["inputs"])
            return f"{name}({types})"
    raise KeyError(f"{name} not found in ABI")


ATTESTATION_POSTED_SIGNATURE = abi_signature(ZKVERIFY_CONTRACT_ABI, "AttestationPosted")
PROOF_SUBMISSION_SIGNATURE = abi_signature(APP_CONTRACT_ABI, "SuccessfulProofSubmission")
PROVE_GAME_WINNER_SIGNATURE = abi_signature(APP_CONTRACT_ABI, "proveGameWinner")
_PROVE_GAME_WINNER_TYPES = [arg["type"] for arg in APP_CONTRACT_ABI[0]["inputs"]]

ATTESTATION_POSTED_TOPIC = Web3.to_hex(Web3.keccak(text=ATTESTATION_POSTED_SIGNATURE))
PROOF_SUBMISSION_TOPIC = Web3.to_hex(Web3.keccak(text=PROOF_SUBMISSION_SIGNATURE))
_PROVE_GAME_WINNER_SELECTOR = Web3.keccak(text=PROVE_GAME_WINNER_SIGNATURE)[:4]

# Solidity revert payloads
_ERROR_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
_PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

_PANIC_CODES = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to uninitialized function",
}


@dataclass(frozen=True)
class AttestationPosted:
    """Decoded AttestationPosted log."""
    attestation_id: int
    root: str
    block_number: int
    transaction_hash: str


def encode_prove_game_winner(attestation_id: int, proof: InclusionProof) -> str:
    """Encode proveGameWinner(attestationId, merklePath, leafCount, index) calldata."""
    path = [bytes.fromhex(node[2:]) for node in proof.merkle_path]
    params = encode(
        _PROVE_GAME_WINNER_TYPES,
        [attestation_id, path, proof.number_of_leaves, proof.leaf_index],
    )
    return Web3.to_hex(_PROVE_GAME_WINNER_SELECTOR + params)


def uint256_topic(value: int) -> str:
    """Topic encoding of an indexed uint256."""
    return "0x" + format(value, "064x")


def string_topic(value: str) -> str:
    """Topic of an indexed string: the keccak hash of its bytes."""
    return Web3.to_hex(Web3.keccak(text=value))


def attestation_posted_filter(
    contract_address: str,
    attestation_id: int,
    from_block: int,
    to_block: Optional[int] = None,
) -> Dict[str, Any]:
    """eth_getLogs filter for AttestationPosted(attestationId, *)."""
    return {
        "address": contract_address,
        "topics": [ATTESTATION_POSTED_TOPIC, uint256_topic(attestation_id)],
        "fromBlock": hex(from_block),
        "toBlock": hex(to_block) if to_block is not None else "latest",
    }


def proof_submission_filter(
    contract_address: str,
    winner: str,
    from_block: int,
    to_block: Optional[int] = None,
) -> Dict[str, Any]:
    """eth_getLogs filter for SuccessfulProofSubmission(winner)."""
    return {
        "address": contract_address,
        "topics": [PROOF_SUBMISSION_TOPIC, string_topic(winner)],
        "fromBlock": hex(from_block),
        "toBlock": hex(to_block) if to_block is not None else "latest",
    }


def decode_attestation_posted(log: Dict[str, Any]) -> AttestationPosted:
    """Decode an AttestationPosted log returned by eth_getLogs."""
    topics = log.get("topics", [])
    if len(topics) < 3 or topics[0].lower() != ATTESTATION_POSTED_TOPIC.lower():
        raise ValueError(f"Not an AttestationPosted log: {topics}")

    root = topics[2].lower()
    if not HASH_PATTERN.match(root):
        raise ValueError(f"Malformed root topic: {topics[2]}")

    return AttestationPosted(
        attestation_id=int(topics[1], 16),
        root=root,
        block_number=int(log.get("blockNumber", "0x0"), 16),
        transaction_hash=log.get("transactionHash", ""),
    )


def decode_revert_reason(data: Any) -> Optional[str]:
    """
    Decode revert data from a failed call.

    Handles Error(string) and Panic(uint256); returns the raw hex for custom
    errors and None when there is no data.
    """
    if not data:
        return None
    if isinstance(data, dict):
        data = data.get("data")
        if not data:
            return None
    if isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
    else:
        text = str(data)
        try:
            raw = bytes.fromhex(text[2:] if text.startswith("0x") else text)
        except ValueError:
            return text

    if len(raw) < 4:
        return None

    selector, payload = raw[:4], raw[4:]
    try:
        if selector == _ERROR_SELECTOR:
            (reason,) = decode(["string"], payload)
            return reason
        if selector == _PANIC_SELECTOR:
            (code,) = decode(["uint256"], payload)
            return f"panic: {_PANIC_CODES.get(code, hex(code))}"
    except DecodingError:
        return Web3.to_hex(raw)
    return Web3.to_hex(raw)
