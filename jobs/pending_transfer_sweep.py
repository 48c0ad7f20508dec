"""
Pending Transfer Sweep
Promotes or garbage-collects optimistic PENDING rows that outlived their TTL.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from services.handshake_errors import LedgerTransportError
from services.transfer_reconciler import RefreshOutcome

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    examined: int = 0
    promoted: int = 0
    deleted: int = 0
    deferred: int = 0


async def sweep_pending_transfers(ctx, now: Optional[datetime] = None) -> SweepResult:
    """
    Re-read every stale PENDING transfer from the ledger.

    Present on ledger -> promoted to ACTIVE through the reconciler.
    Absent -> never confirmed, the row is deleted.
    Ledger unreachable, or pool not synced -> left for the next run.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=ctx.config.pending_transfer_ttl_minutes)
    result = SweepResult()

    addresses = await ctx.store.stale_pending_addresses(cutoff)
    result.examined = len(addresses)

    for address in addresses:
        try:
            outcome = await ctx.reconciler.refresh_address(address)
        except LedgerTransportError as e:
            logger.warning(f"⚠️ PENDING_SWEEP: ledger unavailable for {address}, retrying next run: {e}")
            result.deferred += 1
            continue

        if outcome is RefreshOutcome.MIRRORED:
            result.promoted += 1
        elif outcome is RefreshOutcome.POOL_MISSING:
            logger.warning(f"⚠️ PENDING_SWEEP: pool for {address} not synced, retrying next run")
            result.deferred += 1
        elif await ctx.store.delete_pending(address):
            logger.info(f"🧹 PENDING_SWEEP: removed unconfirmed transfer {address}")
            result.deleted += 1

    if result.examined:
        logger.info(
            f"✅ PENDING_SWEEP: examined={result.examined} promoted={result.promoted} "
            f"deleted={result.deleted} deferred={result.deferred}"
        )
    return result


async def run_pending_sweep(ctx):
    """Scheduler entry point"""
    try:
        await sweep_pending_transfers(ctx)
    except Exception as e:
        logger.error(f"❌ PENDING_SWEEP: sweep failed - {e}", exc_info=True)


def schedule_pending_sweep(scheduler, ctx):
    """Register the sweep on an APScheduler instance"""
    scheduler.add_job(
        run_pending_sweep,
        trigger='interval',
        minutes=ctx.config.pending_sweep_interval_minutes,
        args=[ctx],
        id='pending_transfer_sweep',
        name='🧹 Pending Transfer Sweep - Promote or Remove Stale Rows',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        f"✅ Scheduled pending transfer sweep (every {ctx.config.pending_sweep_interval_minutes} minutes)"
    )
