"""
Service context - the one object wiring config, database and ledger together

Built once at startup and passed to routes and jobs. Tests build their own
with a simulated ledger.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from config import Config
from database import create_mirror_engine, create_session_factory
from services.handshake_client import HandshakeLedgerClient
from services.instruction_builder import InstructionBuilder
from services.mirror_store import MirrorStore
from services.retry_service import RetryPolicy
from services.submission_gateway import SubmissionGateway
from services.transfer_query_service import TokenQueryService, TransferQueryService
from services.transfer_reconciler import TransferReconciler

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    config: Config
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker
    ledger: object
    store: MirrorStore
    reconciler: TransferReconciler
    builder: InstructionBuilder
    gateway: SubmissionGateway
    transfers: TransferQueryService
    tokens: TokenQueryService

    @classmethod
    def assemble(cls, config: Config, session_factory: async_sessionmaker, ledger,
                 engine: Optional[AsyncEngine] = None) -> "ServiceContext":
        store = MirrorStore(session_factory)
        reconciler = TransferReconciler(config, ledger, store)
        return cls(
            config=config,
            engine=engine,
            session_factory=session_factory,
            ledger=ledger,
            store=store,
            reconciler=reconciler,
            builder=InstructionBuilder(config, ledger, store, reconciler),
            gateway=SubmissionGateway(config, ledger, reconciler),
            transfers=TransferQueryService(session_factory),
            tokens=TokenQueryService(session_factory),
        )

    @classmethod
    def from_config(cls, config: Config) -> "ServiceContext":
        """Production wiring: real database engine and RPC client"""
        engine = create_mirror_engine(config)
        ledger = HandshakeLedgerClient(
            config.rpc_url,
            config.program_pubkey,
            read_policy=RetryPolicy.for_ledger_reads(config),
        )
        logger.info(f"🔌 Service context ready (rpc={config.rpc_url})")
        return cls.assemble(config, create_session_factory(engine), ledger, engine=engine)

    async def close(self) -> None:
        close_ledger = getattr(self.ledger, "close", None)
        if close_ledger is not None:
            await close_ledger()
        if self.engine is not None:
            await self.engine.dispose()
