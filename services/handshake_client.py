"""
Handshake Ledger Client

Thin async wrapper over the solana-py RPC client. Every read returns typed
state (PoolState / TransferState / ConfirmedOperation) or None for "not found";
network failures surface as LedgerTransportError. Reads are retried with the
ledger-read policy, sends never are.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from services.address_deriver import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from services.handshake_errors import AccountDecodeError, LedgerTransportError, OperationFailed
from services.ledger_accounts import PoolState, TransferState, decode_account
from services.retry_service import RetryPolicy, RetryService

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (httpx.HTTPError, SolanaRpcException, asyncio.TimeoutError, OSError)

# SPL mint: COption<Pubkey> authority (36), supply u64 (8), decimals u8
_MINT_DECIMALS_OFFSET = 44


@dataclass(frozen=True)
class MintInfo:
    mint: Pubkey
    decimals: int
    token_program: Pubkey

    @property
    def is_token_2022(self) -> bool:
        return self.token_program == TOKEN_2022_PROGRAM_ID


@dataclass(frozen=True)
class ExecutedInstruction:
    """A top-level instruction with its account indexes resolved to addresses"""
    program_id: Pubkey
    accounts: List[Pubkey]
    data: bytes


@dataclass(frozen=True)
class OperationStatus:
    confirmed: bool
    err: Optional[str] = None


@dataclass
class ConfirmedOperation:
    """Everything the reconciler needs from one confirmed operation"""
    op_id: str
    account_keys: List[Pubkey] = field(default_factory=list)
    instructions: List[ExecutedInstruction] = field(default_factory=list)
    log_messages: List[str] = field(default_factory=list)
    err: Optional[str] = None


def is_duplicate_submission(error: Exception) -> bool:
    text = str(error).lower()
    return "already been processed" in text or "alreadyprocessed" in text


class HandshakeLedgerClient:
    """Ledger access for the handshake program"""

    def __init__(self, rpc_url: str, program_id: Pubkey, read_policy: Optional[RetryPolicy] = None,
                 client: Optional[AsyncClient] = None):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.read_policy = read_policy or RetryPolicy()
        self._client = client or AsyncClient(rpc_url, commitment=Confirmed)

    async def close(self) -> None:
        await self._client.close()

    async def _read(self, name: str, call):
        async def attempt():
            try:
                return await call()
            except TRANSPORT_ERRORS as e:
                raise LedgerTransportError(f"{name} failed: {e}") from e

        return await RetryService.retry_async(attempt, self.read_policy, operation_name=name)

    # ------------------------------------------------------------------
    # Account reads
    # ------------------------------------------------------------------

    async def _fetch_program_account(self, address: Pubkey, kind):
        resp = await self._read(
            "get_account_info",
            lambda: self._client.get_account_info(address, commitment=Confirmed),
        )
        account = resp.value
        if account is None:
            return None
        if account.owner != self.program_id:
            logger.debug(f"LEDGER_FOREIGN_ACCOUNT: {address} owned by {account.owner}")
            return None
        try:
            decoded = decode_account(address, bytes(account.data))
        except AccountDecodeError as e:
            logger.debug(f"LEDGER_UNDECODABLE: {e}")
            return None
        return decoded if isinstance(decoded, kind) else None

    async def fetch_pool(self, address: Pubkey) -> Optional[PoolState]:
        return await self._fetch_program_account(address, PoolState)

    async def fetch_transfer(self, address: Pubkey) -> Optional[TransferState]:
        return await self._fetch_program_account(address, TransferState)

    async def fetch_mint_info(self, mint: Pubkey) -> Optional[MintInfo]:
        resp = await self._read(
            "get_account_info",
            lambda: self._client.get_account_info(mint, commitment=Confirmed),
        )
        account = resp.value
        if account is None or account.owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            return None
        data = bytes(account.data)
        if len(data) <= _MINT_DECIMALS_OFFSET:
            return None
        return MintInfo(mint=mint, decimals=data[_MINT_DECIMALS_OFFSET], token_program=account.owner)

    async def get_latest_blockhash(self) -> Hash:
        resp = await self._read(
            "get_latest_blockhash",
            lambda: self._client.get_latest_blockhash(commitment=Confirmed),
        )
        return resp.value.blockhash

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def send_raw_transaction(self, raw_transaction: bytes, op_id: str) -> str:
        """Forward a signed transaction once. Duplicate submission is success."""
        try:
            resp = await self._client.send_raw_transaction(
                raw_transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except RPCException as e:
            if is_duplicate_submission(e):
                logger.info(f"🔁 SUBMIT_DUPLICATE: {op_id} already processed by ledger")
                return op_id
            raise OperationFailed(op_id, e) from e
        except TRANSPORT_ERRORS as e:
            raise LedgerTransportError(f"send_raw_transaction failed: {e}") from e
        return str(resp.value)

    async def get_operation_status(self, op_id: str) -> Optional[OperationStatus]:
        resp = await self._read(
            "get_signature_statuses",
            lambda: self._client.get_signature_statuses([Signature.from_string(op_id)]),
        )
        if not resp.value or resp.value[0] is None:
            return None
        status = resp.value[0]
        confirmed = status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        )
        return OperationStatus(confirmed=confirmed, err=str(status.err) if status.err else None)

    async def get_confirmed_operation(self, op_id: str) -> Optional[ConfirmedOperation]:
        resp = await self._read(
            "get_transaction",
            lambda: self._client.get_transaction(
                Signature.from_string(op_id),
                encoding="base64",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            ),
        )
        if resp.value is None:
            return None

        encoded = resp.value.transaction
        meta = encoded.meta
        message = encoded.transaction.message

        account_keys = list(message.account_keys)
        if meta is not None and meta.loaded_addresses is not None:
            account_keys.extend(meta.loaded_addresses.writable)
            account_keys.extend(meta.loaded_addresses.readonly)

        instructions = [
            ExecutedInstruction(
                program_id=account_keys[ix.program_id_index],
                accounts=[account_keys[i] for i in bytes(ix.accounts)],
                data=bytes(ix.data),
            )
            for ix in message.instructions
        ]

        return ConfirmedOperation(
            op_id=op_id,
            account_keys=account_keys,
            instructions=instructions,
            log_messages=list(meta.log_messages or []) if meta is not None else [],
            err=str(meta.err) if meta is not None and meta.err else None,
        )
