"""
Handshake Indexer API Server
FastAPI application: transaction building, submission and Mirror queries
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from config import Config
from database import create_tables, test_connection
from jobs.scheduler import IndexerScheduler
from routes.handshake_api import register_error_handlers, router as handshake_router
from services.bootstrap_sync import sync_configured_pool
from services.handshake_errors import LedgerTransportError
from services.service_context import ServiceContext

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # Quiet chatty HTTP client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(ctx: Optional[ServiceContext] = None, run_background: bool = True) -> FastAPI:
    """Build the app. A prebuilt context skips environment wiring (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = app.state.ctx is None
        if owns_context:
            config = Config.from_env()
            logging.getLogger().setLevel(config.log_level)
            config.log_environment_config()
            app.state.ctx = ServiceContext.from_config(config)

        context = app.state.ctx
        scheduler = None
        if run_background:
            if context.engine is not None:
                if await test_connection(context.engine):
                    await create_tables(context.engine)
                else:
                    logger.error("❌ Database connection FAILED - indexer may not function properly")
            try:
                await sync_configured_pool(context)
            except LedgerTransportError as e:
                logger.warning(f"⚠️ BOOTSTRAP_DEFERRED: ledger unavailable at startup: {e}")
            scheduler = IndexerScheduler(context)
            scheduler.start()

        logger.info("🚀 Handshake indexer ready")
        yield

        logger.info("🔄 Handshake indexer shutting down...")
        if scheduler is not None:
            scheduler.shutdown()
        if owns_context:
            await context.close()

    app = FastAPI(
        title="Handshake Escrow Indexer",
        description="Transaction construction and ledger mirror for escrowed token transfers",
        lifespan=lifespan,
    )
    app.state.ctx = ctx
    register_error_handlers(app)
    app.include_router(handshake_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "Handshake Escrow Indexer"}

    return app


def main():
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
