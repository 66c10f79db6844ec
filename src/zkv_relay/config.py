"""
Configuration management for zkv-relay.

Provides:
- Environment-provided endpoints, credentials and contract addresses
- RPC endpoint lists with fallback support
- Retrieval retry and backoff settings
- Per-stage timeout bounds
- Gas estimation parameters
- Destination log polling settings
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings
from web3 import Web3

from .exceptions import ConfigurationError
from .models import ProofSystem

logger = logging.getLogger(__name__)


class RelaySettings(BaseSettings):
    """Environment surface: endpoints, credentials, contract addresses."""

    # Attestation network (zkVerify)
    zkv_rpc_url: str = ""
    zkv_seed_phrase: str = ""
    zkv_proof_system: ProofSystem = ProofSystem.RISC0

    # Destination chain
    eth_rpc_url: str = ""
    eth_fallback_rpc_urls: str = ""  # Comma-separated
    eth_chain_id: Optional[int] = None
    eth_secret_key: str = ""
    eth_zkverify_contract_address: str = ""
    eth_app_contract_address: str = ""

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("eth_zkverify_contract_address", "eth_app_contract_address")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        if not v:
            return v
        if not Web3.is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return Web3.to_checksum_address(v)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def eth_rpc_urls(self) -> List[str]:
        """Primary destination RPC URL followed by the fallbacks."""
        urls = [self.eth_rpc_url] if self.eth_rpc_url else []
        for url in self.eth_fallback_rpc_urls.split(","):
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
        return urls

    def require_complete(self) -> None:
        """Raise ConfigurationError listing every missing required value."""
        required = {
            "ZKV_RPC_URL": self.zkv_rpc_url,
            "ZKV_SEED_PHRASE": self.zkv_seed_phrase,
            "ETH_RPC_URL": self.eth_rpc_url,
            "ETH_SECRET_KEY": self.eth_secret_key,
            "ETH_ZKVERIFY_CONTRACT_ADDRESS": self.eth_zkverify_contract_address,
            "ETH_APP_CONTRACT_ADDRESS": self.eth_app_contract_address,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                missing=missing,
            )


@lru_cache
def get_settings() -> RelaySettings:
    """Settings loaded once from the environment."""
    return RelaySettings()


@dataclass
class RPCEndpointConfig:
    """Configuration for a single RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0

    # Health check settings
    health_check_interval_seconds: float = 60.0
    max_consecutive_failures: int = 3


def build_endpoints(urls: List[str], timeout_seconds: float = 30.0) -> List[RPCEndpointConfig]:
    """Build prioritized endpoint configs, primary first."""
    return [
        RPCEndpointConfig(url=url, priority=i, timeout_seconds=timeout_seconds)
        for i, url in enumerate(urls)
    ]


@dataclass
class RetrievalConfig:
    """Inclusion proof retrieval retry settings."""
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 16.0
    jitter: float = 0.1
    request_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


@dataclass
class TimeoutConfig:
    """Upper bounds for every external wait, in seconds."""
    session_connect: float = 30.0
    attestation: float = 900.0  # Deferred submission result
    finalization: float = 120.0
    attestation_posted: float = 1800.0  # Root relayed to the destination chain
    relay_confirmation: float = 180.0
    acknowledgment: float = 180.0


@dataclass
class GasConfig:
    """Gas estimation for the relay transaction."""
    gas_limit_buffer_percent: int = 20
    default_priority_fee_wei: int = 1_500_000_000  # 1.5 gwei
    base_fee_multiplier: int = 2  # maxFee = base * multiplier + priority


@dataclass
class WatcherConfig:
    """Destination chain log polling."""
    poll_interval_seconds: float = 5.0
    lookback_blocks: int = 1000  # How far back to search for an already-posted root


@dataclass
class RelayConfig:
    """Master tuning configuration for one relay process."""
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    gas: GasConfig = field(default_factory=GasConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)

    # Broadcast & confirmation
    broadcast_timeout_retries: int = 1
    confirmations_required: int = 1
    receipt_poll_interval_seconds: float = 2.0

    # Attestation network
    finalization_poll_interval_seconds: float = 2.0
    wait_for_published_attestation: bool = True
