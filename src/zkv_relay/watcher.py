"""
Destination chain log watcher.

Polls eth_getLogs for the two events the relay waits on:
- AttestationPosted(attestationId, root) from the attestation contract
- SuccessfulProofSubmission(winner) from the application contract

Each subscription resolves at most once and stops polling afterwards. An
acknowledgment only counts when it was emitted by the relay transaction
itself, so concurrent relays from the same caller cannot satisfy each other.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .config import WatcherConfig
from .contracts import (
    AttestationPosted,
    attestation_posted_filter,
    decode_attestation_posted,
    proof_submission_filter,
)
from .exceptions import RelayError, RelayTimeoutError
from .rpc_client import AllEndpointsFailedError, EvmRPCClient, RPCError

logger = logging.getLogger(__name__)

FilterBuilder = Callable[[int, int], Dict[str, Any]]
LogDecoder = Callable[[Dict[str, Any]], Any]

class LogSubscription:
    """One-shot log subscription backed by a polling task."""

    def __init__(
        self,
        name: str,
        rpc: EvmRPCClient,
        build_filter: FilterBuilder,
        from_block: int,
        poll_interval_seconds: float,
        decode: Optional[LogDecoder] = None,
        attestation_id: Optional[int] = None,
    ):
        self.name = name
        self.attestation_id = attestation_id
        self._rpc = rpc
        self._build_filter = build_filter
        self._next_block = from_block
        self._poll_interval = poll_interval_seconds
        self._decode = decode or (lambda log: log)
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._poll())

    @property
    def done(self) -> bool:
        return self._future.done()

    async def _poll(self) -> None:
        while not self._future.done():
            try:
                head = await self._rpc.get_block_number()
                if head >= self._next_block:
                    logs = await self._rpc.get_logs(self._build_filter(self._next_block, head))
                    for log in logs:
                        if log.get("removed"):
                            continue
                        try:
                            value = self._decode(log)
                        except ValueError as e:
                            logger.warning(f"Skipping malformed {self.name} log: {e}")
                            continue
                        if self._accept(value):
                            self._resolve(value)
                            return
                    self._next_block = head + 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Error polling {self.name} logs: {e}")

            await asyncio.sleep(self._poll_interval)

    def _accept(self, value: Any) -> bool:
        return True

    def _resolve(self, value: Any) -> None:
        if not self._future.done():
            self._future.set_result(value)
            logger.info(f"Observed {self.name} event")

    async def wait(self, timeout_seconds: float) -> Any:
        """
        Wait for the event.

        Raises:
            RelayTimeoutError: If the event is not observed in time. The
                subscription is cancelled.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            self.cancel()
            raise RelayTimeoutError(
                stage=self.name,
                timeout_seconds=timeout_seconds,
                attestation_id=self.attestation_id,
                message=f"{self.name} event not observed within {timeout_seconds}s",
            )

    def cancel(self) -> None:
        """Stop polling. Safe to call more than once."""
        if not self._task.done():
            self._task.cancel()
        if not self._future.done():
            self._future.cancel()


S = TypeVar("S", bound=LogSubscription)


class AcknowledgmentSubscription(LogSubscription):
    """
    SuccessfulProofSubmission subscription tied to one relay transaction.

    Registered before the broadcast, so the transaction hash is not known
    yet. Logs seen until `expect_transaction` is called are held and matched
    then.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        self._tx_hash: Optional[str] = None
        self._held: List[Dict[str, Any]] = []
        super().__init__(*args, **kwargs)

    def expect_transaction(self, tx_hash: str) -> None:
        """Only accept the acknowledgment emitted by `tx_hash`."""
        self._tx_hash = tx_hash.lower()
        held, self._held = self._held, []
        for log in held:
            if self._matches(log):
                self._resolve(log)
                return

    def _accept(self, log: Dict[str, Any]) -> bool:
        if self._tx_hash is None:
            self._held.append(log)
            return False
        if self._matches(log):
            return True
        logger.debug(f"Ignoring acknowledgment from transaction {log.get('transactionHash')}")
        return False

    def _matches(self, log: Dict[str, Any]) -> bool:
        return (log.get("transactionHash") or "").lower() == self._tx_hash


class DestinationWatcher:
    """Creates log subscriptions against the destination contracts."""

    def __init__(
        self,
        rpc: EvmRPCClient,
        zkverify_contract: str,
        app_contract: str,
        config: Optional[WatcherConfig] = None,
    ):
        self._rpc = rpc
        self._zkverify_contract = zkverify_contract
        self._app_contract = app_contract
        self._config = config or WatcherConfig()
        self._subscriptions: List[LogSubscription] = []

    async def watch_attestation_posted(self, attestation_id: int) -> LogSubscription:
        """
        Subscribe to AttestationPosted for an attestation id.

        Scans back `lookback_blocks` so a root posted before subscribing is
        still observed. Resolves to an AttestationPosted record.
        """
        head = await self._head("attestation_posted", attestation_id)
        from_block = max(0, head - self._config.lookback_blocks)

        def build_filter(from_block: int, to_block: int) -> Dict[str, Any]:
            return attestation_posted_filter(
                self._zkverify_contract, attestation_id, from_block, to_block
            )

        logger.info(f"Waiting for AttestationPosted of attestation {attestation_id} from block {from_block}")
        return self._track(LogSubscription(
            name="attestation_posted",
            rpc=self._rpc,
            build_filter=build_filter,
            from_block=from_block,
            poll_interval_seconds=self._config.poll_interval_seconds,
            decode=_decode_posted,
            attestation_id=attestation_id,
        ))

    async def watch_proof_acknowledged(
        self,
        winner: str,
        attestation_id: Optional[int] = None,
    ) -> AcknowledgmentSubscription:
        """
        Subscribe to SuccessfulProofSubmission for the caller address.

        Scans from the current head; register it before broadcasting so
        the acknowledgment cannot be missed, then call `expect_transaction`
        with the relay transaction hash. Resolves to the raw log.
        """
        head = await self._head("acknowledgment", attestation_id)

        def build_filter(from_block: int, to_block: int) -> Dict[str, Any]:
            return proof_submission_filter(self._app_contract, winner, from_block, to_block)

        return self._track(AcknowledgmentSubscription(
            name="acknowledgment",
            rpc=self._rpc,
            build_filter=build_filter,
            from_block=head,
            poll_interval_seconds=self._config.poll_interval_seconds,
            attestation_id=attestation_id,
        ))

    async def _head(self, stage: str, attestation_id: Optional[int]) -> int:
        try:
            return await self._rpc.get_block_number()
        except (RPCError, AllEndpointsFailedError) as e:
            raise RelayError(
                f"Could not read destination chain head: {e}",
                attestation_id=attestation_id,
                stage=stage,
                cause=e,
            ) from e

    def _track(self, subscription: S) -> S:
        self._subscriptions = [s for s in self._subscriptions if not s.done]
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        """Cancel every pending subscription."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()


def _decode_posted(log: Dict[str, Any]) -> AttestationPosted:
    posted = decode_attestation_posted(log)
    logger.info(f"Attestation {posted.attestation_id} posted with root {posted.root}")
    return posted
