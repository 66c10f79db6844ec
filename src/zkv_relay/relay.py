"""
Relay transaction execution on the destination chain.

Sends proveGameWinner(attestationId, merklePath, leafCount, index) to the
application contract, signed locally with eth_account.

Retry policy:
- Network timeouts during broadcast are retried (once by default)
- A node answering "already known" means the transaction is in its pool
- A rejection of the retried send leaves delivery unknown: the timed-out
  attempt may already be pending
- Chain rejections and reverts are never retried
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3

from .config import RelayConfig
from .contracts import decode_revert_reason, encode_prove_game_winner
from .exceptions import RelayError, RelayTimeoutError
from .models import InclusionProof
from .rpc_client import AllEndpointsFailedError, EvmRPCClient, RPCError

logger = logging.getLogger(__name__)


class CrossChainRelay:
    """Submits inclusion proofs to the application contract."""

    def __init__(
        self,
        rpc: EvmRPCClient,
        app_contract: str,
        secret_key: str,
        config: Optional[RelayConfig] = None,
    ):
        self._rpc = rpc
        self._app_contract = Web3.to_checksum_address(app_contract)
        self._account = Account.from_key(secret_key)
        self._config = config or RelayConfig()
        self._calldata: Dict[str, str] = {}

    @property
    def address(self) -> str:
        """Caller address derived from the secret key."""
        return self._account.address

    async def broadcast(self, attestation_id: int, proof: InclusionProof) -> str:
        """
        Build, sign and broadcast the relay transaction.

        Returns the transaction hash.

        Raises:
            RelayError: If the call would revert, the destination chain cannot
                be reached before sending, or the chain rejects the
                transaction. `revert_reason` carries the chain's reason;
                `tx_hash` without a reason means delivery is unknown.
        """
        data = encode_prove_game_winner(attestation_id, proof)
        call = {"from": self.address, "to": self._app_contract, "data": data}

        try:
            gas_estimate = await self._rpc.estimate_gas(call)
        except RPCError as e:
            reason = decode_revert_reason(e.data) or str(e)
            raise RelayError(
                f"proveGameWinner would revert: {reason}",
                attestation_id=attestation_id,
                revert_reason=reason,
                cause=e,
            ) from e
        except AllEndpointsFailedError as e:
            raise RelayError(
                f"Could not estimate gas for proveGameWinner: {e}",
                attestation_id=attestation_id,
                cause=e,
            ) from e
        gas_limit = gas_estimate * (100 + self._config.gas.gas_limit_buffer_percent) // 100

        try:
            nonce = await self._rpc.get_nonce(self.address)
            chain_id = await self._rpc.get_chain_id()
            fees = await self._fee_params()
        except (RPCError, AllEndpointsFailedError) as e:
            raise RelayError(
                f"Could not prepare relay transaction: {e}",
                attestation_id=attestation_id,
                cause=e,
            ) from e

        tx_params: Dict[str, Any] = {
            "to": self._app_contract,
            "value": 0,
            "data": data,
            "gas": gas_limit,
            "nonce": nonce,
            "chainId": chain_id,
            **fees,
        }
        signed = self._account.sign_transaction(tx_params)
        raw_tx = Web3.to_hex(signed.raw_transaction)
        tx_hash = Web3.to_hex(signed.hash)
        self._calldata[tx_hash] = data

        logger.info(
            f"Broadcasting proveGameWinner for attestation {attestation_id}: "
            f"nonce={nonce}, gas={gas_limit}, tx={tx_hash}"
        )
        return await self._send(raw_tx, tx_hash, attestation_id)

    async def _fee_params(self) -> Dict[str, int]:
        """EIP-1559 fees when the chain reports a base fee, legacy gas price otherwise."""
        base_fee = await self._rpc.get_base_fee()
        if base_fee is None:
            return {"gasPrice": await self._rpc.get_gas_price()}

        priority_fee = await self._rpc.get_max_priority_fee()
        if priority_fee is None:
            priority_fee = self._config.gas.default_priority_fee_wei
        return {
            "type": 2,
            "maxFeePerGas": base_fee * self._config.gas.base_fee_multiplier + priority_fee,
            "maxPriorityFeePerGas": priority_fee,
        }

    async def _send(self, raw_tx: str, tx_hash: str, attestation_id: int) -> str:
        retries = 0
        while True:
            try:
                returned = await self._rpc.send_raw_transaction(raw_tx)
            except RPCError as e:
                if "already known" in str(e).lower():
                    logger.info(f"Transaction {tx_hash} already known to the node")
                    return tx_hash
                if retries:
                    if await self._has_receipt(tx_hash):
                        # The timed-out attempt was delivered
                        return tx_hash
                    raise RelayError(
                        f"Relay transaction {tx_hash} delivery unknown: retry after "
                        f"timeout was rejected ({e})",
                        attestation_id=attestation_id,
                        tx_hash=tx_hash,
                        cause=e,
                    ) from e
                reason = decode_revert_reason(e.data) or str(e)
                raise RelayError(
                    f"Relay transaction rejected: {reason}",
                    attestation_id=attestation_id,
                    tx_hash=tx_hash,
                    revert_reason=reason,
                    cause=e,
                ) from e
            except AllEndpointsFailedError as e:
                if e.timed_out and retries < self._config.broadcast_timeout_retries:
                    retries += 1
                    logger.warning(f"Broadcast of {tx_hash} timed out, retrying ({retries})")
                    continue
                # Delivery unknown: no revert reason
                raise RelayError(
                    f"Relay transaction broadcast failed: {e}",
                    attestation_id=attestation_id,
                    tx_hash=tx_hash,
                    cause=e,
                ) from e

            if returned and returned.lower() != tx_hash.lower():
                logger.warning(f"Node returned tx hash {returned}, expected {tx_hash}")
                return returned
            return tx_hash

    async def _has_receipt(self, tx_hash: str) -> bool:
        try:
            return bool(await self._rpc.get_transaction_receipt(tx_hash))
        except (RPCError, AllEndpointsFailedError) as e:
            logger.warning(f"Error fetching receipt for {tx_hash}: {e}")
            return False

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        timeout_seconds: Optional[float] = None,
        attestation_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Wait for the relay transaction's receipt.

        Raises:
            RelayError: If the transaction reverted
            RelayTimeoutError: If no receipt arrives in time
        """
        timeout = timeout_seconds or self._config.timeouts.relay_confirmation
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self._rpc.get_transaction_receipt(tx_hash)
            except (RPCError, AllEndpointsFailedError) as e:
                logger.warning(f"Error fetching receipt for {tx_hash}: {e}")
                receipt = None

            if receipt:
                status = int(receipt.get("status", "0x0"), 16)
                block_number = int(receipt.get("blockNumber", "0x0"), 16)
                if status == 0:
                    reason = await self._replay_revert_reason(tx_hash, block_number)
                    raise RelayError(
                        f"Relay transaction {tx_hash} reverted: {reason or 'no reason given'}",
                        attestation_id=attestation_id,
                        tx_hash=tx_hash,
                        revert_reason=reason,
                    )

                confirmations = 1
                if self._config.confirmations_required > 1:
                    try:
                        current_block = await self._rpc.get_block_number()
                        confirmations = current_block - block_number + 1
                    except (RPCError, AllEndpointsFailedError) as e:
                        logger.warning(f"Error fetching block number: {e}")
                        confirmations = 0
                if confirmations >= self._config.confirmations_required:
                    logger.info(
                        f"Relay transaction {tx_hash} confirmed in block {block_number} "
                        f"with {confirmations} confirmations"
                    )
                    self._calldata.pop(tx_hash, None)
                    return receipt

            if loop.time() >= deadline:
                raise RelayTimeoutError(
                    stage="relay_confirmation",
                    timeout_seconds=timeout,
                    attestation_id=attestation_id,
                    message=f"Relay transaction {tx_hash} not confirmed after {timeout}s",
                )
            await asyncio.sleep(self._config.receipt_poll_interval_seconds)

    async def _replay_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Re-simulate a reverted call at its block to recover the reason."""
        data = self._calldata.pop(tx_hash, None)
        if data is None:
            return None
        try:
            await self._rpc.eth_call(
                {"from": self.address, "to": self._app_contract, "data": data},
                block=hex(block_number),
            )
        except RPCError as e:
            return decode_revert_reason(e.data) or str(e)
        except AllEndpointsFailedError as e:
            logger.warning(f"Could not replay reverted transaction {tx_hash}: {e}")
        return None
