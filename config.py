"""Configuration management for the Handshake escrow indexer"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Mapping

from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_PROGRAM_ID = "HZ8paEkYZ2hKBwHoVk23doSLEad9K5duASRTGaYogmfg"


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def to_async_database_url(database_url: str) -> str:
    """Rewrite a plain postgres URL for the asyncpg driver.

    asyncpg uses 'ssl' instead of the libpq 'sslmode' parameter.
    """
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    database_url = database_url.replace("sslmode=require", "ssl=require")
    database_url = database_url.replace("sslmode=prefer", "ssl=prefer")
    database_url = database_url.replace("sslmode=disable", "ssl=disable")
    return database_url


@dataclass(frozen=True)
class Config:
    """Application configuration

    Built once at process start and handed to every component through the
    service context. Nothing reads the environment after construction.
    """

    database_url: str
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = DEFAULT_PROGRAM_ID

    # Startup sync of the operator's named pool and its seed token
    pool_name: Optional[str] = None
    usdc_mint_address: Optional[str] = None
    usdc_token_name: str = "USD Coin"
    usdc_token_symbol: str = "USDC"
    usdc_token_decimals: int = 6

    # Submission confirmation wait
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval_seconds: float = 0.5

    # Retries for idempotent ledger reads
    ledger_read_max_attempts: int = 3
    ledger_read_initial_delay: float = 0.5
    ledger_read_max_delay: float = 5.0

    # Optimistic PENDING rows
    pending_transfer_ttl_minutes: int = 30
    pending_sweep_interval_minutes: int = 5

    # Database pool
    db_pool_size: int = 7
    db_max_overflow: int = 15
    db_echo: bool = False

    log_level: str = "INFO"

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("DATABASE_URL is required")
        try:
            Pubkey.from_string(self.program_id)
        except ValueError:
            raise ValueError(f"HANDSHAKE_PROGRAM_ID is not a valid address: {self.program_id!r}")
        if self.usdc_mint_address:
            try:
                Pubkey.from_string(self.usdc_mint_address)
            except ValueError:
                raise ValueError(f"USDC_MINT_ADDRESS is not a valid address: {self.usdc_mint_address!r}")
        if self.confirm_timeout_seconds <= 0:
            raise ValueError("CONFIRM_TIMEOUT_SECONDS must be positive")
        if self.confirm_poll_interval_seconds <= 0:
            raise ValueError("CONFIRM_POLL_INTERVAL_SECONDS must be positive")
        if self.ledger_read_max_attempts < 1:
            raise ValueError("LEDGER_READ_MAX_ATTEMPTS must be at least 1")
        if self.pending_transfer_ttl_minutes <= 0:
            raise ValueError("PENDING_TRANSFER_TTL_MINUTES must be positive")

    @property
    def async_database_url(self) -> str:
        return to_async_database_url(self.database_url)

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        """Build configuration from environment variables"""
        env = os.environ if env is None else env
        return cls(
            database_url=env.get("DATABASE_URL", ""),
            rpc_url=env.get("RPC_URL") or DEFAULT_RPC_URL,
            program_id=env.get("HANDSHAKE_PROGRAM_ID") or DEFAULT_PROGRAM_ID,
            pool_name=env.get("HANDSHAKE_POOL_NAME") or None,
            usdc_mint_address=env.get("USDC_MINT_ADDRESS") or None,
            usdc_token_name=env.get("USDC_TOKEN_NAME") or "USD Coin",
            usdc_token_symbol=env.get("USDC_TOKEN_SYMBOL") or "USDC",
            usdc_token_decimals=_env_int(env, "USDC_TOKEN_DECIMALS", 6),
            confirm_timeout_seconds=_env_float(env, "CONFIRM_TIMEOUT_SECONDS", 60.0),
            confirm_poll_interval_seconds=_env_float(env, "CONFIRM_POLL_INTERVAL_SECONDS", 0.5),
            ledger_read_max_attempts=_env_int(env, "LEDGER_READ_MAX_ATTEMPTS", 3),
            ledger_read_initial_delay=_env_float(env, "LEDGER_READ_INITIAL_DELAY", 0.5),
            ledger_read_max_delay=_env_float(env, "LEDGER_READ_MAX_DELAY", 5.0),
            pending_transfer_ttl_minutes=_env_int(env, "PENDING_TRANSFER_TTL_MINUTES", 30),
            pending_sweep_interval_minutes=_env_int(env, "PENDING_SWEEP_INTERVAL_MINUTES", 5),
            db_pool_size=_env_int(env, "DB_POOL_SIZE", 7),
            db_max_overflow=_env_int(env, "DB_MAX_OVERFLOW", 15),
            db_echo=_env_bool(env.get("DB_ECHO")),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def log_environment_config(self) -> None:
        """Log current configuration for debugging (no secrets are held here)"""
        logger.info("🔧 Handshake indexer configuration:")
        logger.info(f"   RPC: {self.rpc_url}")
        logger.info(f"   Program: {self.program_id}")
        logger.info(f"   Named pool: {self.pool_name or 'not configured'}")
        logger.info(f"   Seed token mint: {self.usdc_mint_address or 'not configured'}")
        logger.info(
            f"   Confirmation: timeout={self.confirm_timeout_seconds}s "
            f"poll={self.confirm_poll_interval_seconds}s"
        )
        logger.info(
            f"   Pending sweep: ttl={self.pending_transfer_ttl_minutes}m "
            f"every {self.pending_sweep_interval_minutes}m"
        )
