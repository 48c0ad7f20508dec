"""
Submission Gateway

Forwards a client-signed transaction to the ledger exactly once, waits a
bounded time for confirmation and hands the operation to the reconciler.

- Duplicate submission of an already-processed transaction is success.
- A transport failure on send is ambiguous: the transaction may have reached
  the ledger, so the gateway goes on to the confirmation wait instead of
  re-sending.
- Confirmation timeout raises ConfirmationTimeout carrying the operation id;
  the outcome is unknown and the caller re-queries.
- Reconciliation problems are logged and never fail a confirmed submission.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from config import Config
from services.handshake_errors import (
    ConfirmationTimeout,
    InvalidTransaction,
    LedgerTransportError,
    OperationFailed,
)
from services.transfer_reconciler import ReconciliationReport, TransferReconciler

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    op_id: str
    reconciliation: Optional[ReconciliationReport] = None


def decode_signed_transaction(signed_tx_b64: str):
    """Return (raw bytes, first signature) for a base64 signed transaction"""
    try:
        raw = base64.b64decode(signed_tx_b64, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise InvalidTransaction("Signed transaction is not valid base64")

    transaction = None
    for parser in (VersionedTransaction.from_bytes, Transaction.from_bytes):
        try:
            transaction = parser(raw)
            break
        except Exception as e:
            logger.debug(f"SUBMIT_PARSE_ATTEMPT: {parser.__qualname__} rejected payload: {e}")
    if transaction is None:
        raise InvalidTransaction()

    if not transaction.signatures or transaction.signatures[0] == Signature.default():
        raise InvalidTransaction("Transaction carries no fee-payer signature")
    return raw, transaction.signatures[0]


class SubmissionGateway:
    """Submit, confirm, reconcile"""

    def __init__(self, config: Config, ledger, reconciler: TransferReconciler):
        self.config = config
        self.ledger = ledger
        self.reconciler = reconciler

    async def submit(self, signed_tx_b64: str) -> SubmissionResult:
        raw, signature = decode_signed_transaction(signed_tx_b64)
        op_id = str(signature)

        try:
            await self.ledger.send_raw_transaction(raw, op_id)
            logger.info(f"📤 SUBMIT_SENT: {op_id}")
        except LedgerTransportError as e:
            logger.warning(f"⚠️ SUBMIT_SEND_UNCERTAIN: {op_id} may or may not have reached the ledger: {e}")
        except OperationFailed as e:
            logger.error(f"❌ SUBMIT_REJECTED: {op_id}: {e.ledger_error}")
            raise

        await self.wait_for_confirmation(op_id)
        logger.info(f"✅ SUBMIT_CONFIRMED: {op_id}")

        report = None
        try:
            report = await self.reconciler.reconcile_operation(op_id)
        except Exception as e:
            # Mirror catches up on the next read-triggered refresh
            logger.error(f"❌ RECONCILE_FAILED: {op_id} confirmed but reconciliation failed: {e}", exc_info=True)

        return SubmissionResult(op_id=op_id, reconciliation=report)

    async def wait_for_confirmation(self, op_id: str) -> None:
        """Poll signature status until confirmed, failed, or the deadline passes"""
        loop = asyncio.get_running_loop()
        timeout = self.config.confirm_timeout_seconds
        deadline = loop.time() + timeout

        while True:
            try:
                status = await self.ledger.get_operation_status(op_id)
            except LedgerTransportError as e:
                logger.warning(f"⚠️ SUBMIT_STATUS_UNAVAILABLE: {op_id}: {e}")
                status = None

            if status is not None:
                if status.err:
                    logger.error(f"❌ SUBMIT_FAILED: {op_id}: {status.err}")
                    raise OperationFailed(op_id, status.err)
                if status.confirmed:
                    return
            logger.debug(f"SUBMIT_WAITING: {op_id} status={status}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"⏱️ SUBMIT_TIMEOUT: {op_id} unconfirmed after {timeout}s")
                raise ConfirmationTimeout(op_id, timeout)
            await asyncio.sleep(min(self.config.confirm_poll_interval_seconds, remaining))
