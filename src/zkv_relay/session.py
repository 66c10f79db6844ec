"""
Attestation network session management.

Features:
- One authenticated session per relay process, with explicit open/close
- Pluggable transport (production zkVerify transport or test doubles)
- Proof submission returning a live event emitter and a deferred result
- Proof-of-existence queries for finalized attestations
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .exceptions import RelayException, SessionError, SubmissionError
from .models import AttestationResult, ProofBundle, SessionEvent, SessionEventKind

logger = logging.getLogger(__name__)

EventListener = Callable[[SessionEvent], None]
EmitCallback = Callable[[SessionEvent], None]


class EventEmitter:
    """Named-event emitter for session lifecycle events."""

    def __init__(self) -> None:
        self._listeners: Dict[SessionEventKind, List[EventListener]] = {}
        self._once: Dict[SessionEventKind, List[EventListener]] = {}

    def on(self, kind: SessionEventKind, listener: EventListener) -> None:
        """Register a listener for an event kind."""
        self._listeners.setdefault(SessionEventKind(kind), []).append(listener)

    def once(self, kind: SessionEventKind, listener: EventListener) -> None:
        """Register a listener that is removed after its first call."""
        self.on(kind, listener)
        self._once.setdefault(SessionEventKind(kind), []).append(listener)

    def off(self, kind: SessionEventKind, listener: EventListener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        listeners = self._listeners.get(SessionEventKind(kind), [])
        if listener in listeners:
            listeners.remove(listener)
            once = self._once.get(SessionEventKind(kind), [])
            if listener in once:
                once.remove(listener)
            return True
        return False

    def emit(self, event: SessionEvent) -> int:
        """Deliver an event to its listeners. Returns the number notified."""
        listeners = list(self._listeners.get(event.kind, []))
        for listener in listeners:
            if listener in self._once.get(event.kind, []):
                self.off(event.kind, listener)
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in {event.kind.value} listener: {e}")
        return len(listeners)

    def listener_count(self, kind: Optional[SessionEventKind] = None) -> int:
        if kind is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(SessionEventKind(kind), []))

    def remove_all_listeners(self) -> None:
        self._listeners.clear()
        self._once.clear()


class AttestationTransport(ABC):
    """Abstract interface to the attestation network."""

    @abstractmethod
    async def connect(self) -> str:
        """Open the connection and authenticate. Returns the account address."""
        pass

    @abstractmethod
    async def submit_proof(
        self,
        bundle: ProofBundle,
        emit: EmitCallback,
    ) -> AttestationResult:
        """
        Submit a proof for verification and attestation.

        Lifecycle events are reported through `emit` as they happen. Returns
        the attestation id and leaf digest; raises SubmissionError if the
        network rejects the proof.
        """
        pass

    @abstractmethod
    async def proof_path(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        """Query the Merkle proof of existence for a published leaf."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        pass


@dataclass
class Submission:
    """A proof submission in flight."""
    bundle: ProofBundle
    events: EventEmitter
    result: "asyncio.Future[AttestationResult]"
    task: "asyncio.Task[None]"

    @property
    def done(self) -> bool:
        return self.result.done()

    def cancel(self) -> None:
        """Stop waiting on the submission and drop its listeners."""
        if not self.task.done():
            self.task.cancel()
        if not self.result.done():
            self.result.cancel()
        self.events.remove_all_listeners()


class AttestationSession:
    """
    Authenticated session against the attestation network.

    Usage:
        session = await AttestationSession.start(transport)
        try:
            submission = await session.verify(bundle)
            result = await submission.result
        finally:
            await session.close()
    """

    def __init__(self, transport: AttestationTransport):
        self._transport = transport
        self._account: Optional[str] = None
        self._open = False
        self._submissions: List[Submission] = []

    @classmethod
    async def start(
        cls,
        transport: AttestationTransport,
        connect_timeout_seconds: float = 30.0,
    ) -> "AttestationSession":
        """
        Open an authenticated session.

        Raises:
            SessionError: If the session cannot be established. Never retried.
        """
        session = cls(transport)
        await session.open(connect_timeout_seconds)
        return session

    async def open(self, connect_timeout_seconds: float = 30.0) -> None:
        if self._open:
            return
        try:
            self._account = await asyncio.wait_for(
                self._transport.connect(), timeout=connect_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self._close_transport_quietly()
            raise SessionError(
                f"Timed out opening attestation session after {connect_timeout_seconds}s",
                cause=e,
            ) from e
        except SessionError:
            await self._close_transport_quietly()
            raise
        except Exception as e:
            await self._close_transport_quietly()
            raise SessionError(f"Failed to open attestation session: {e}", cause=e) from e

        self._open = True
        logger.info(f"Attestation session opened for account {self._account}")

    @property
    def account(self) -> Optional[str]:
        return self._account

    @property
    def is_open(self) -> bool:
        return self._open

    async def verify(self, bundle: ProofBundle) -> Submission:
        """
        Submit a proof bundle for attestation.

        Returns a Submission whose `events` emitter reports lifecycle events
        and whose `result` future resolves to the attestation id and leaf
        digest, or rejects with SubmissionError.
        """
        self._ensure_open()

        loop = asyncio.get_running_loop()
        emitter = EventEmitter()
        result: asyncio.Future[AttestationResult] = loop.create_future()
        task = asyncio.create_task(self._run_submission(bundle, emitter, result))
        submission = Submission(bundle=bundle, events=emitter, result=result, task=task)
        self._submissions.append(submission)
        task.add_done_callback(lambda _: self._forget(submission))

        logger.info(f"Submitted {bundle.proof_system.value} proof for attestation")
        return submission

    async def _run_submission(
        self,
        bundle: ProofBundle,
        emitter: EventEmitter,
        result: "asyncio.Future[AttestationResult]",
    ) -> None:
        try:
            attestation = await self._transport.submit_proof(bundle, emitter.emit)
        except asyncio.CancelledError:
            if not result.done():
                result.cancel()
            raise
        except RelayException as e:
            self._reject(emitter, result, e)
        except Exception as e:
            self._reject(
                emitter,
                result,
                SubmissionError(f"Proof submission failed: {e}", cause=e),
            )
        else:
            if not result.done():
                result.set_result(attestation)
            logger.info(
                f"Attestation published: attestation_id={attestation.attestation_id}, "
                f"leaf_digest={attestation.leaf_digest}"
            )

    @staticmethod
    def _reject(
        emitter: EventEmitter,
        result: "asyncio.Future[AttestationResult]",
        error: RelayException,
    ) -> None:
        logger.error(f"Proof submission failed: {error}")
        emitter.emit(SessionEvent(kind=SessionEventKind.ERROR, error=str(error)))
        if not result.done():
            result.set_exception(error)

    async def proof_of_existence(self, attestation_id: int, leaf_digest: str) -> Dict[str, Any]:
        """Query the inclusion proof of a leaf in a published attestation."""
        self._ensure_open()
        return await self._transport.proof_path(attestation_id, leaf_digest)

    def _ensure_open(self) -> None:
        if not self._open:
            raise SessionError("Attestation session is not open")

    def _forget(self, submission: Submission) -> None:
        if submission in self._submissions:
            self._submissions.remove(submission)

    async def close(self) -> None:
        """Cancel pending submissions and close the transport."""
        pending = [s for s in self._submissions if not s.task.done()]
        for submission in pending:
            submission.cancel()
        if pending:
            await asyncio.gather(*(s.task for s in pending), return_exceptions=True)
        self._submissions.clear()

        if self._open:
            self._open = False
            await self._transport.close()
            logger.info("Attestation session closed")

    async def _close_transport_quietly(self) -> None:
        try:
            await self._transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport after failed connect: {e}")

    async def __aenter__(self) -> "AttestationSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
