"""
Retry Service with Exponential Backoff
Ensures resilient ledger reads. Writes are never retried here.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from services.handshake_errors import LedgerTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True
    exceptions: tuple = (LedgerTransportError,)

    @classmethod
    def for_ledger_reads(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.ledger_read_max_attempts,
            initial_delay=config.ledger_read_initial_delay,
            max_delay=config.ledger_read_max_delay,
        )


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        operation_name: Optional[str] = None,
    ) -> Any:
        """
        Retry an async function with exponential backoff

        Args:
            func: Zero-argument coroutine factory to retry
            policy: Attempts, delays and the exceptions worth retrying
            operation_name: Label used in log lines
        """
        policy = policy or RetryPolicy()
        name = operation_name or getattr(func, "__name__", "ledger_call")
        attempt = 0
        delay = policy.initial_delay

        while True:
            try:
                return await func()
            except policy.exceptions as e:
                attempt += 1

                if attempt >= policy.max_attempts:
                    logger.error(f"❌ RETRY_EXHAUSTED: {name} failed after {attempt} attempts: {e}")
                    raise

                # Calculate next delay with exponential backoff
                if policy.jitter:
                    actual_delay = delay * (0.5 + random.random())
                else:
                    actual_delay = delay

                logger.warning(
                    f"⚠️ RETRY: attempt {attempt}/{policy.max_attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                await asyncio.sleep(actual_delay)

                delay = min(delay * policy.exponential_base, policy.max_delay)

