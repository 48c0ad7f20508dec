"""
Handshake error taxonomy

Every error surfaced to a caller carries a stable error_code and a human
message. Resolution errors are expected races or bad references and are never
retried automatically; transport errors are retryable for idempotent reads only.
"""

from typing import Optional


class HandshakeError(Exception):
    """Base handshake error with context"""
    def __init__(self, message: str, error_code: str = None, is_retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.is_retryable = is_retryable

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.error_code, "message": self.message}


# ---------------------------------------------------------------------------
# Resolution errors
# ---------------------------------------------------------------------------

class ResolutionError(HandshakeError):
    """A referenced record could not be found"""
    pass


class PoolNotFound(ResolutionError):
    def __init__(self, message: str = "Pool not found"):
        super().__init__(message, error_code="POOL_NOT_FOUND")


class TokenNotFound(ResolutionError):
    def __init__(self, message: str = "Token not found"):
        super().__init__(message, error_code="TOKEN_NOT_FOUND")


class NoActivePool(ResolutionError):
    def __init__(self, message: str = "No active pool available"):
        super().__init__(message, error_code="NO_ACTIVE_POOL")


class TransferNotFound(ResolutionError):
    """The transfer record is gone: usually someone else already resolved it"""
    def __init__(self, address: str):
        super().__init__(
            f"Transfer {address} not found on ledger (already resolved or never created)",
            error_code="TRANSFER_NOT_FOUND",
        )
        self.address = address


# ---------------------------------------------------------------------------
# Validation errors (raised before any network call)
# ---------------------------------------------------------------------------

class ValidationError(HandshakeError):
    pass


class InvalidAmount(ValidationError):
    def __init__(self, message: str = "Amount must be a positive integer"):
        super().__init__(message, error_code="INVALID_AMOUNT")


class InvalidFeeRate(ValidationError):
    def __init__(self, fee_bps):
        super().__init__(
            f"Fee rate must be between 0 and 10000 basis points, got {fee_bps}",
            error_code="INVALID_FEE_RATE",
        )


class MemoTooLong(ValidationError):
    def __init__(self, length: int, limit: int):
        super().__init__(
            f"Memo is {length} bytes, limit is {limit}",
            error_code="MEMO_TOO_LONG",
        )


class InvalidTimeWindow(ValidationError):
    def __init__(self, message: str = "Invalid claim window"):
        super().__init__(message, error_code="INVALID_TIME_WINDOW")


class InvalidAddress(ValidationError):
    def __init__(self, field: str, value):
        super().__init__(f"Invalid {field}: {value!r}", error_code="INVALID_PUBKEY")
        self.field = field


class InvalidTransaction(ValidationError):
    def __init__(self, message: str = "Could not decode signed transaction"):
        super().__init__(message, error_code="INVALID_TRANSACTION")


class PoolPaused(ValidationError):
    def __init__(self, pool_address: str):
        super().__init__(f"Pool {pool_address} is paused", error_code="POOL_PAUSED")
        self.pool_address = pool_address


# ---------------------------------------------------------------------------
# Ledger errors
# ---------------------------------------------------------------------------

class LedgerTransportError(HandshakeError):
    """Network failure talking to the ledger"""
    def __init__(self, message: str):
        super().__init__(message, error_code="LEDGER_UNAVAILABLE", is_retryable=True)


class OperationFailed(HandshakeError):
    """The ledger confirmed the operation with an error"""
    def __init__(self, op_id: str, ledger_error):
        super().__init__(
            f"Operation {op_id} failed on ledger: {ledger_error}",
            error_code="OPERATION_FAILED",
        )
        self.op_id = op_id
        self.ledger_error = ledger_error


class ConfirmationTimeout(HandshakeError):
    """Outcome is unknown: the operation may or may not have landed"""
    def __init__(self, op_id: str, waited_seconds: Optional[float] = None):
        waited = f" after {waited_seconds:.1f}s" if waited_seconds is not None else ""
        super().__init__(
            f"Operation {op_id} not confirmed{waited}; re-query before retrying",
            error_code="CONFIRMATION_TIMEOUT",
            is_retryable=True,
        )
        self.op_id = op_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["signature"] = self.op_id
        return body


class AccountDecodeError(HandshakeError):
    """Account data did not match any known layout"""
    def __init__(self, message: str):
        super().__init__(message, error_code="ACCOUNT_DECODE_ERROR")
