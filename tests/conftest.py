"""
Shared fixtures for the Handshake indexer test suite.

Key Components:
1. A Mirror database per test (SQLAlchemy async engine over aiosqlite in tmp_path)
2. An in-process ledger simulator executing real signed transactions
3. A HandshakeHarness that drives the build -> sign -> submit round trip
"""

import logging
from typing import Optional

import pytest
import pytest_asyncio
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import Config, DEFAULT_PROGRAM_ID
from database import create_mirror_engine, create_session_factory, create_tables
from services.service_context import ServiceContext
from ledger_simulator import LedgerSimulator, sign_batch

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

USDC_DECIMALS = 6


class HandshakeHarness:
    """Wallets, a pool and the round trip a client performs"""

    def __init__(self, ctx: ServiceContext, ledger: LedgerSimulator):
        self.ctx = ctx
        self.ledger = ledger
        self.operator = Keypair()
        self.sender = Keypair()
        self.recipient = Keypair()
        self.mint = Keypair().pubkey()
        self.pool: Optional[Pubkey] = None

    async def setup_pool(self, fee_bps: int = 0, name: str = "handshake-test", symbol: str = "USDC",
                         sender_funds: int = 10 ** 12) -> Pubkey:
        self.ledger.add_mint(self.mint, decimals=USDC_DECIMALS)
        self.pool = self.ledger.create_pool(name, self.operator.pubkey(), self.mint, fee_bps=fee_bps)
        self.ledger.fund(self.sender.pubkey(), self.mint, sender_funds)
        await self.ctx.store.ensure_token(
            str(self.mint), name="USD Coin", symbol=symbol, decimals=USDC_DECIMALS, overwrite_metadata=True,
        )
        await self.ctx.reconciler.sync_pool(self.pool)
        return self.pool

    async def submit(self, batch, *signers: Keypair):
        return await self.ctx.gateway.submit(sign_batch(batch.transaction_b64, *signers))

    async def create_transfer(self, amount: int, **kwargs) -> str:
        batch = await self.ctx.builder.build_create(
            self.sender.pubkey(), self.recipient.pubkey(), amount, **kwargs
        )
        await self.submit(batch, self.sender)
        return batch.address

    async def transfer_row(self, address: str):
        return await self.ctx.transfers.find_by_address(address)


@pytest.fixture
def config(tmp_path):
    return Config(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}",
        program_id=DEFAULT_PROGRAM_ID,
        confirm_timeout_seconds=0.3,
        confirm_poll_interval_seconds=0.01,
        ledger_read_max_attempts=3,
        ledger_read_initial_delay=0.01,
        ledger_read_max_delay=0.02,
    )


@pytest.fixture
def ledger(config):
    return LedgerSimulator(config.program_pubkey)


@pytest_asyncio.fixture
async def engine(config):
    engine = create_mirror_engine(config)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def ctx(config, engine, ledger):
    return ServiceContext.assemble(config, create_session_factory(engine), ledger, engine=engine)


@pytest_asyncio.fixture
async def harness(ctx, ledger):
    return HandshakeHarness(ctx, ledger)
