"""Canonical configuration surface for the relayer.

Values come from environment variables prefixed with ``OMEGA_RELAYER_``;
nested sections use ``__`` as delimiter, e.g.
``OMEGA_RELAYER_OMEGA__BRIDGE_ADDRESS=0x...`` or
``OMEGA_RELAYER_EXECUTOR__MAX_ATTEMPTS=5``.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SolanaSettings(BaseModel):
    """Source ledger connection and watched accounts."""
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    timeout_seconds: float = 30.0

    # Bridged SPL token (burns are watched on this mint)
    token_mint: str = ""
    token_decimals: int = 9

    # Relayer keypair as a JSON array of 64 bytes, or a path to such a file
    relayer_keypair_json: SecretStr = SecretStr("")
    relayer_keypair_path: Optional[Path] = None

    # Wallet receiving NFT deposits; defaults to the relayer pubkey
    nft_receiver: str = ""


class OmegaSettings(BaseModel):
    """Target ledger connection, contracts and signer."""
    rpc_urls: List[str] = Field(default_factory=lambda: [
        "https://0x4e454228.rpc.aurora-cloud.dev",
    ])
    chain_id: int = 1313161768
    validate_chain_id: bool = True
    timeout_seconds: float = 30.0

    bridge_address: str = ""
    sentries_address: str = ""
    serpent_address: str = ""

    private_key: SecretStr = SecretStr("")
    native_decimals: int = 18
    gas_limit_buffer_percent: int = 20
    default_gas_limit: int = 300_000
    confirmations_required: int = 1

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def parse_rpc_urls(cls, v):
        """Parse comma-separated RPC URLs from env var."""
        if isinstance(v, str):
            return [u.strip() for u in v.split(",") if u.strip()]
        return v


class PollerSettings(BaseModel):
    """Source poller cadence and fetch behaviour."""
    token_interval_seconds: float = 5.0
    nft_interval_seconds: float = 5.0
    page_size: int = 20
    fetch_attempts: int = 3
    fetch_base_delay: float = 1.0
    propagation_delay_seconds: float = 1.0


class ExecutorSettings(BaseModel):
    """Retry and confirmation policy for compensating writes."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    confirmation_timeout_seconds: float = 120.0
    confirmation_poll_seconds: float = 2.0
    nft_scan_window: int = 50

    # Submitted-but-unconfirmed writes are not recorded by default, which
    # risks a duplicate delivery rather than a lost one.
    record_on_unknown_outcome: bool = False


class ListenerSettings(BaseModel):
    """Target event subscription and reconciliation sweep."""
    enabled: bool = True
    filter_poll_seconds: float = 4.0
    sweep_interval_seconds: float = 60.0
    sweep_window_blocks: int = 1000
    max_block_range: int = 500


class StoreSettings(BaseModel):
    """Dedup store location."""
    data_dir: Path = Path("./data")


class RelayerSettings(BaseSettings):
    """Main relayer configuration."""

    environment: Literal["dev", "staging", "prod"] = "dev"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    heartbeat_seconds: float = 60.0

    solana: SolanaSettings = Field(default_factory=SolanaSettings)
    omega: OmegaSettings = Field(default_factory=OmegaSettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    model_config = SettingsConfigDict(
        env_prefix="OMEGA_RELAYER_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache
def load_settings(env_file: str | None = None) -> RelayerSettings:
    """Load RelayerSettings once per process so every loop sees the same values."""
    if env_file:
        return RelayerSettings(_env_file=Path(env_file))
    return RelayerSettings()
