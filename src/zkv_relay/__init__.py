"""Cross-chain proof attestation relay exports."""

from .config import (
    GasConfig,
    RelayConfig,
    RelaySettings,
    RetrievalConfig,
    TimeoutConfig,
    WatcherConfig,
    get_settings,
)
from .coordinator import RelayCoordinator, open_coordinator
from .dispatcher import EventDispatcher
from .exceptions import (
    AttestationStateError,
    ConfigurationError,
    InclusionProofFormatError,
    RelayError,
    RelayException,
    RelayTimeoutError,
    RetrievalError,
    SessionError,
    SubmissionError,
)
from .models import (
    AttestationHandle,
    AttestationResult,
    AttestationStatus,
    InclusionProof,
    ProofBundle,
    ProofSystem,
    RelayOutcome,
    SessionEvent,
    SessionEventKind,
)
from .relay import CrossChainRelay
from .retriever import InclusionProofRetriever
from .rpc_client import EvmRPCClient
from .session import AttestationSession, AttestationTransport, EventEmitter, Submission
from .substrate_transport import ZkVerifyTransport
from .watcher import AcknowledgmentSubscription, DestinationWatcher, LogSubscription

__all__ = [
    "GasConfig",
    "RelayConfig",
    "RelaySettings",
    "RetrievalConfig",
    "TimeoutConfig",
    "WatcherConfig",
    "get_settings",
    "RelayCoordinator",
    "open_coordinator",
    "EventDispatcher",
    "AttestationStateError",
    "ConfigurationError",
    "InclusionProofFormatError",
    "RelayError",
    "RelayException",
    "RelayTimeoutError",
    "RetrievalError",
    "SessionError",
    "SubmissionError",
    "AttestationHandle",
    "AttestationResult",
    "AttestationStatus",
    "InclusionProof",
    "ProofBundle",
    "ProofSystem",
    "RelayOutcome",
    "SessionEvent",
    "SessionEventKind",
    "CrossChainRelay",
    "InclusionProofRetriever",
    "EvmRPCClient",
    "AttestationSession",
    "AttestationTransport",
    "EventEmitter",
    "Submission",
    "ZkVerifyTransport",
    "DestinationWatcher",
    "LogSubscription",
    "AcknowledgmentSubscription",
]
