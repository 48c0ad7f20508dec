"""
Handshake API Routes
FastAPI routes for transfer queries, transaction building and submission
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from services.handshake_errors import (
    ConfirmationTimeout,
    HandshakeError,
    LedgerTransportError,
    OperationFailed,
    ResolutionError,
    ValidationError,
)
from services.instruction_builder import parse_address
from services.transfer_query_service import token_to_dict, transfer_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["handshake"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateTransferBody(_Body):
    sender: str
    recipient: str
    amount: int
    memo: Optional[str] = None
    claimable_after: int = Field(0, alias="claimableAfter")
    claimable_until: int = Field(0, alias="claimableUntil")
    pool_address: Optional[str] = Field(None, alias="poolAddress")
    mint: Optional[str] = None
    token_symbol: Optional[str] = Field(None, alias="tokenSymbol")


class ClaimTransferBody(_Body):
    claimer: str
    transfer_address: str = Field(alias="transferAddress")


class CancelTransferBody(_Body):
    sender: str
    transfer_address: str = Field(alias="transferAddress")


class RejectTransferBody(_Body):
    operator: str
    transfer_address: str = Field(alias="transferAddress")
    reason: Optional[int] = Field(None, ge=0, le=255)


class DeclineTransferBody(_Body):
    recipient: str
    transfer_address: str = Field(alias="transferAddress")
    reason: Optional[int] = Field(None, ge=0, le=255)


class ExpireTransferBody(_Body):
    caller: str
    transfer_address: str = Field(alias="transferAddress")


class PausePoolBody(_Body):
    operator: str
    pool_address: str = Field(alias="poolAddress")
    is_paused: bool = Field(alias="isPaused")


class SubmitBody(_Body):
    signed_tx: str = Field(alias="signedTx")


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------

def get_context(request: Request):
    return request.app.state.ctx


def ok(data) -> dict:
    return {"ok": True, "data": data}


def status_code_for(error: HandshakeError) -> int:
    if isinstance(error, ResolutionError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, LedgerTransportError):
        return 502
    if isinstance(error, ConfirmationTimeout):
        return 504
    if isinstance(error, OperationFailed):
        return 409
    return 500


async def handshake_error_handler(request: Request, error: HandshakeError):
    status_code = status_code_for(error)
    if status_code >= 500:
        logger.error(f"❌ API_ERROR: {request.url.path} {error.error_code}: {error.message}")
    else:
        logger.info(f"API_REJECTED: {request.url.path} {error.error_code}: {error.message}")
    return JSONResponse(status_code=status_code, content=error.to_dict())


async def request_validation_handler(request: Request, error: RequestValidationError):
    first = error.errors()[0] if error.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "MISSING_FIELD", "message": f"{field}: {first.get('msg', 'invalid')}"},
    )


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(HandshakeError, handshake_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@router.get("/transfers")
async def list_transfers(wallet: Optional[str] = Query(None), ctx=Depends(get_context)):
    """Transfers for a wallet (sender or recipient), or the most recent ones"""
    if wallet:
        parse_address("wallet", wallet)
        transfers = await ctx.transfers.find_by_wallet(wallet)
    else:
        transfers = await ctx.transfers.find_recent()
    return ok([transfer_to_dict(t) for t in transfers])


@router.get("/transfers/{address}")
async def get_transfer(address: str, refresh: bool = Query(False), ctx=Depends(get_context)):
    parse_address("address", address)
    if refresh:
        try:
            await ctx.reconciler.refresh_address(address)
        except LedgerTransportError as e:
            logger.warning(f"⚠️ RECONCILE_REFRESH_DEFERRED: {address} served from mirror, ledger unavailable: {e}")
    transfer = await ctx.transfers.find_by_address(address)
    if transfer is None:
        return JSONResponse(
            status_code=404,
            content={"ok": False, "error": "TRANSFER_NOT_FOUND", "message": f"Transfer {address} not found"},
        )
    return ok(transfer_to_dict(transfer))


@router.get("/tokens")
async def list_tokens(ctx=Depends(get_context)):
    tokens = await ctx.tokens.list_tokens()
    return ok([token_to_dict(t) for t in tokens])


# ---------------------------------------------------------------------------
# Transaction building
# ---------------------------------------------------------------------------

@router.post("/tx/create-transfer")
async def create_transfer(body: CreateTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_create(
        body.sender,
        body.recipient,
        body.amount,
        memo=body.memo,
        claimable_after=body.claimable_after,
        claimable_until=body.claimable_until,
        pool_address=body.pool_address,
        mint=body.mint,
        token_symbol=body.token_symbol,
    )
    return ok(batch.to_dict())


@router.post("/tx/claim-transfer")
async def claim_transfer(body: ClaimTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_claim(body.claimer, body.transfer_address)
    return ok(batch.to_dict())


@router.post("/tx/cancel-transfer")
async def cancel_transfer(body: CancelTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_cancel(body.sender, body.transfer_address)
    return ok(batch.to_dict())


@router.post("/tx/reject-transfer")
async def reject_transfer(body: RejectTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_reject(body.operator, body.transfer_address, reason=body.reason)
    return ok(batch.to_dict())


@router.post("/tx/decline-transfer")
async def decline_transfer(body: DeclineTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_decline(body.recipient, body.transfer_address, reason=body.reason)
    return ok(batch.to_dict())


@router.post("/tx/expire-transfer")
async def expire_transfer(body: ExpireTransferBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_expire(body.caller, body.transfer_address)
    return ok(batch.to_dict())


@router.post("/tx/pause-pool")
async def pause_pool(body: PausePoolBody, ctx=Depends(get_context)):
    batch = await ctx.builder.build_pause_pool(body.operator, body.pool_address, body.is_paused)
    return ok(batch.to_dict())


@router.post("/tx/submit")
async def submit_transaction(body: SubmitBody, ctx=Depends(get_context)):
    result = await ctx.gateway.submit(body.signed_tx)
    data = {"signature": result.op_id}
    if result.reconciliation is not None:
        data["reconciled"] = {
            "activated": result.reconciliation.activated,
            "terminal": result.reconciliation.terminal_updates,
        }
    return ok(data)
