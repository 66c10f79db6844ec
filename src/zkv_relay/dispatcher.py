"""
Session event dispatch for one submission.

State machine:
    submitted -> included_in_block -> finalized
    (any non-finalized state) -> submission_failed

Rules:
- Lifecycle events are applied at most once per kind
- A lifecycle event that would move the status backwards is a no-op
- Error events are logged and recorded but never change the status
- Only rejection of the deferred submission result marks the submission failed
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from .exceptions import RelayException, RelayTimeoutError, SubmissionError
from .models import AttestationHandle, AttestationStatus, SessionEvent, SessionEventKind
from .session import EventEmitter

logger = logging.getLogger(__name__)

_TARGET_STATUS = {
    SessionEventKind.INCLUDED_IN_BLOCK: AttestationStatus.INCLUDED_IN_BLOCK,
    SessionEventKind.FINALIZED: AttestationStatus.FINALIZED,
}


class EventDispatcher:
    """Applies session events to an AttestationHandle."""

    def __init__(self, handle: AttestationHandle):
        self._handle = handle
        self._seen: Set[SessionEventKind] = set()
        self._emitter: Optional[EventEmitter] = None
        self._finalized = asyncio.Event()
        self._failed = asyncio.Event()
        self._failure: Optional[RelayException] = None
        self._finalized_event: Optional[SessionEvent] = None

        if handle.status == AttestationStatus.FINALIZED:
            self._finalized.set()

    @property
    def handle(self) -> AttestationHandle:
        return self._handle

    @property
    def status(self) -> AttestationStatus:
        return self._handle.status

    def attach(self, emitter: EventEmitter) -> None:
        """Subscribe to the lifecycle and error events of a submission."""
        if self._emitter is not None:
            self.detach()
        for kind in SessionEventKind:
            emitter.on(kind, self.handle_event)
        self._emitter = emitter

    def detach(self) -> None:
        """Unsubscribe from the emitter."""
        if self._emitter is None:
            return
        for kind in SessionEventKind:
            self._emitter.off(kind, self.handle_event)
        self._emitter = None

    def handle_event(self, event: SessionEvent) -> bool:
        """Apply an event. Returns True if it changed the handle's status."""
        if event.kind == SessionEventKind.ERROR:
            logger.error(f"Attestation network reported an error: {event.error}")
            self._handle.errors.append(event.error or "unknown error")
            return False

        if event.kind in self._seen:
            logger.debug(f"Ignoring duplicate {event.kind.value} event")
            return False
        self._seen.add(event.kind)

        current = self._handle.status
        target = _TARGET_STATUS[event.kind]
        if current == AttestationStatus.SUBMISSION_FAILED or target.rank <= current.rank:
            logger.debug(
                f"Ignoring stale {event.kind.value} event in status {current.value}"
            )
            return False

        self._handle.status = target
        self._handle.updated_at = datetime.now(timezone.utc)

        if event.kind == SessionEventKind.INCLUDED_IN_BLOCK:
            self._handle.tx_hash = event.tx_hash
            if event.block_hash:
                self._handle.block_hash = event.block_hash
            logger.info(f"Transaction accepted in attestation network, tx-hash: {event.tx_hash}")
        else:
            if event.block_hash:
                self._handle.block_hash = event.block_hash
            self._finalized_event = event
            self._finalized.set()
            logger.info(f"Transaction finalized in attestation network, block-hash: {event.block_hash}")

        return True

    def mark_submission_failed(self, error: RelayException) -> None:
        """Record rejection of the deferred submission result."""
        self._failure = error
        self._handle.errors.append(str(error))
        if self._handle.status == AttestationStatus.FINALIZED:
            # Finalized never regresses; the missing identifiers still block retrieval
            logger.warning(f"Submission result rejected after finalization: {error}")
        else:
            self._handle.status = AttestationStatus.SUBMISSION_FAILED
            self._handle.updated_at = datetime.now(timezone.utc)
        self._failed.set()

    def observe_result(self, result: "asyncio.Future") -> None:
        """Mark the submission failed when its deferred result rejects."""

        def _on_done(future: "asyncio.Future") -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is None:
                return
            if not isinstance(error, RelayException):
                error = SubmissionError(f"Proof submission failed: {error}", cause=error)
            self.mark_submission_failed(error)

        result.add_done_callback(_on_done)

    async def wait_for_finalization(self, timeout_seconds: float) -> Optional[SessionEvent]:
        """
        Wait until the finalized event has been observed.

        Raises:
            SubmissionError: If the submission failed before finalization
            RelayTimeoutError: If finalization is not observed in time
        """
        if self._finalized.is_set():
            return self._finalized_event
        self._raise_if_failed()

        finalized = asyncio.create_task(self._finalized.wait())
        failed = asyncio.create_task(self._failed.wait())
        try:
            await asyncio.wait(
                {finalized, failed},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            finalized.cancel()
            failed.cancel()

        if self._finalized.is_set():
            return self._finalized_event
        self._raise_if_failed()
        raise RelayTimeoutError(
            stage="finalization",
            timeout_seconds=timeout_seconds,
            attestation_id=self._handle.attestation_id,
        )

    def _raise_if_failed(self) -> None:
        if self._failed.is_set() and self._failure is not None:
            raise self._failure
