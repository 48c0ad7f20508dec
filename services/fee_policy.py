"""Basis-point fee model. Only a claim pays a fee; every refund returns the gross amount."""

from dataclasses import dataclass

from services.handshake_errors import InvalidAmount, InvalidFeeRate

BPS_DENOMINATOR = 10_000
MAX_FEE_BPS = 10_000


@dataclass(frozen=True)
class Settlement:
    fee: int
    net: int


def validate_fee_bps(fee_bps: int) -> int:
    """Reject out-of-range rates; never clamp silently"""
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise InvalidFeeRate(fee_bps)
    if fee_bps < 0 or fee_bps > MAX_FEE_BPS:
        raise InvalidFeeRate(fee_bps)
    return fee_bps


def compute_fee(amount: int, fee_bps: int) -> Settlement:
    """fee = floor(amount * fee_bps / 10000), net = amount - fee"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
    validate_fee_bps(fee_bps)
    fee = amount * fee_bps // BPS_DENOMINATOR
    return Settlement(fee=fee, net=amount - fee)


def settle_claim(amount: int, fee_bps: int) -> Settlement:
    return compute_fee(amount, fee_bps)


def settle_refund(amount: int) -> Settlement:
    """Cancel, reject, decline and expire all refund in full"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
    return Settlement(fee=0, net=amount)
