"""
Pytest configuration for omega-relayer tests.
"""
from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from omega_relayer.config import (  # noqa: E402
    ExecutorSettings,
    ListenerSettings,
    OmegaSettings,
    PollerSettings,
    RelayerSettings,
    SolanaSettings,
    StoreSettings,
)
from omega_relayer.dedup import DedupStores  # noqa: E402
from omega_relayer.guard import ConcurrencyGuard  # noqa: E402

from chain_fixtures import (  # noqa: E402
    BRIDGE_ADDRESS,
    OMEGA_PRIVATE_KEY,
    SENTRIES_ADDRESS,
    SERPENT_ADDRESS,
    TOKEN_MINT,
)


@pytest.fixture
def settings(tmp_path) -> RelayerSettings:
    """Settings with short timeouts and a per-test data directory."""
    return RelayerSettings(
        _env_file=None,
        solana=SolanaSettings(
            rpc_url="http://solana.test",
            token_mint=TOKEN_MINT,
        ),
        omega=OmegaSettings(
            rpc_urls=["http://omega.test"],
            chain_id=1313161768,
            bridge_address=BRIDGE_ADDRESS,
            sentries_address=SENTRIES_ADDRESS,
            serpent_address=SERPENT_ADDRESS,
            private_key=OMEGA_PRIVATE_KEY,
        ),
        poller=PollerSettings(
            page_size=20,
            fetch_attempts=2,
            fetch_base_delay=0.0,
            propagation_delay_seconds=0.0,
        ),
        executor=ExecutorSettings(
            max_attempts=3,
            base_delay=0.0,
            max_delay=0.0,
            confirmation_timeout_seconds=0.05,
            confirmation_poll_seconds=0.01,
            nft_scan_window=10,
        ),
        listener=ListenerSettings(max_block_range=100, sweep_window_blocks=250),
        store=StoreSettings(data_dir=tmp_path / "data"),
    )


@pytest.fixture
def stores(settings) -> DedupStores:
    return DedupStores(settings.store.data_dir)


@pytest.fixture
def guard() -> ConcurrencyGuard:
    return ConcurrencyGuard()


@pytest.fixture
def omega_rpc() -> AsyncMock:
    """Omega RPC client mock usable as ``async with factory() as rpc``."""
    rpc = AsyncMock()
    rpc.__aenter__.return_value = rpc
    rpc.__aexit__.return_value = None
    return rpc


@pytest.fixture
def solana_rpc() -> AsyncMock:
    """Solana RPC client mock usable as ``async with factory() as client``."""
    client = AsyncMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None
    return client
