"""Exception hierarchy for the attestation relay.

Every relay failure inherits from RelayException, which carries:
- error_code: Machine-readable error code (e.g., "SUBMISSION_FAILED")
- stage: Pipeline stage that failed (session, submission, retrieval, ...)
- attestation_id: Attestation id when it is already known
- details: Optional additional context dictionary
- to_dict(): Structured form for logs and CLI output

Usage:
    from zkv_relay.exceptions import RelayException, SubmissionError

    try:
        outcome = await coordinator.relay_proof(bundle)
    except RelayException as e:
        logger.error(f"Relay failed: {e.to_dict()}")

The context is meant to be enough to resume manually: a finalized attestation
with no relay yet can be re-entered at the retrieval stage with its
attestation id and leaf digest.
"""
from __future__ import annotations

from typing import Any, Optional


class RelayException(Exception):
    """Base exception for all relay errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        stage: Name of the stage that failed
        attestation_id: Attestation id, if known at failure time
        details: Optional additional context
    """

    error_code: str = "RELAY_ERROR"
    default_stage: str = "relay"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        attestation_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.attestation_id = attestation_id
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a structured dictionary."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "stage": self.stage,
            "message": self.message,
        }
        if self.attestation_id is not None:
            result["attestation_id"] = self.attestation_id
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(RelayException):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"
    default_stage = "configuration"

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        details = {"missing": missing} if missing else None
        super().__init__(message, details=details)
        self.missing = missing or []


class SessionError(RelayException):
    """The attestation network session could not be established.

    Fatal for the whole relay; never retried.
    """

    error_code = "SESSION_ERROR"
    default_stage = "session"


class SubmissionError(RelayException):
    """The attestation network rejected the proof submission.

    Fatal for this proof only; the session remains usable.
    """

    error_code = "SUBMISSION_FAILED"
    default_stage = "submission"


class AttestationStateError(RelayException):
    """An operation was requested for an attestation in the wrong state.

    This is a programming error, not a recoverable condition.
    """

    error_code = "INVALID_ATTESTATION_STATE"
    default_stage = "retrieval"


class RetrievalError(RelayException):
    """Inclusion proof retrieval failed after exhausting its attempts."""

    error_code = "RETRIEVAL_FAILED"
    default_stage = "retrieval"

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        attestation_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        details = dict(details or {})
        if attempts:
            details["attempts"] = attempts
        super().__init__(
            message,
            attestation_id=attestation_id,
            details=details,
            cause=cause,
        )
        self.attempts = attempts


class InclusionProofFormatError(RetrievalError):
    """The attestation network returned a malformed inclusion proof."""

    error_code = "INVALID_INCLUSION_PROOF"


class RelayError(RelayException):
    """A destination chain operation failed.

    Either the chain rejected or reverted the relay transaction, or it could
    not be reached at the given stage. A `tx_hash` without a `revert_reason`
    means the transaction may have been delivered.

    Never retried automatically: a second relay transaction risks double
    submission against the application contract.
    """

    error_code = "RELAY_FAILED"
    default_stage = "relay"

    def __init__(
        self,
        message: str,
        attestation_id: Optional[int] = None,
        tx_hash: Optional[str] = None,
        revert_reason: Optional[str] = None,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        if revert_reason:
            details["revert_reason"] = revert_reason
        super().__init__(
            message,
            stage=stage,
            attestation_id=attestation_id,
            details=details,
            cause=cause,
        )
        self.tx_hash = tx_hash
        self.revert_reason = revert_reason


class RelayTimeoutError(RelayException, TimeoutError):
    """A stage's terminal event did not arrive within its bound.

    Requires operator intervention.
    """

    error_code = "TIMEOUT"
    default_stage = "unknown"

    def __init__(
        self,
        stage: str,
        timeout_seconds: float,
        attestation_id: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or f"Stage '{stage}' did not complete within {timeout_seconds}s",
            stage=stage,
            attestation_id=attestation_id,
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


__all__ = [
    "RelayException",
    "ConfigurationError",
    "SessionError",
    "SubmissionError",
    "AttestationStateError",
    "RetrievalError",
    "InclusionProofFormatError",
    "RelayError",
    "RelayTimeoutError",
]
