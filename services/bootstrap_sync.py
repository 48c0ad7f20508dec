"""
Startup sync of the operator's configured token and named pool.

Missing ledger state is logged and never blocks startup.
"""

import logging

from services.address_deriver import derive_named_pool_address

logger = logging.getLogger(__name__)


async def sync_configured_pool(ctx) -> bool:
    """Seed the configured token and refresh the named pool. True if the pool was synced."""
    config = ctx.config

    if config.usdc_mint_address:
        token = await ctx.store.ensure_token(
            config.usdc_mint_address,
            name=config.usdc_token_name,
            symbol=config.usdc_token_symbol,
            decimals=config.usdc_token_decimals,
            overwrite_metadata=True,
        )
        logger.info(f"🪙 BOOTSTRAP_TOKEN: {token.symbol} ({token.mint}) decimals={token.decimals}")

    if not config.pool_name:
        logger.info("BOOTSTRAP_POOL_SKIPPED: HANDSHAKE_POOL_NAME not set")
        return False

    pool_address, _ = derive_named_pool_address(config.pool_name, config.program_pubkey)
    pool = await ctx.reconciler.sync_pool(pool_address)
    if pool is None:
        logger.warning(f"⚠️ BOOTSTRAP_POOL_MISSING: pool '{config.pool_name}' ({pool_address}) not found on ledger")
        return False

    logger.info(
        f"🏊 BOOTSTRAP_POOL: '{config.pool_name}' {pool.address} fee={pool.fee_bps}bps paused={pool.is_paused}"
    )
    return True
