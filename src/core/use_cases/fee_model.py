"""
Fee and liquidation arithmetic for perpetual positions.

All amounts are atomic USD integers (10^-6 dollars) and every step multiplies
before it divides. Divisions truncate toward zero so negative funding keeps
its sign the same way the program computes it.
"""
from typing import Optional

from pydantic import BaseModel, Field

from src.config import BPS_POWER, RATE_POWER
from src.core.entities.events import Side


class PositionState(BaseModel):
    side: Side
    price: int  # entry price
    size_usd: int
    collateral_usd: int
    cumulative_interest_snapshot: int = 0


class CustodyPricing(BaseModel):
    """Pool parameters of the traded asset's custody."""
    increase_position_bps: int = 0
    decrease_position_bps: int
    trade_impact_fee_scalar: int = Field(ge=0)
    max_leverage: int = Field(gt=0)  # bps, 500_000 == 50x
    cumulative_interest_rate: int = 0  # collateral custody funding state


def tdiv(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def base_fee(size_usd: int, fee_bps: int) -> int:
    return tdiv(size_usd * fee_bps, BPS_POWER)


def price_impact_fee_bps(size_usd: int, trade_impact_fee_scalar: int) -> int:
    if trade_impact_fee_scalar <= 0:
        return 0
    return tdiv(size_usd * BPS_POWER, trade_impact_fee_scalar)


def open_fee(size_usd: int, pricing: CustodyPricing) -> int:
    total_bps = pricing.increase_position_bps + price_impact_fee_bps(size_usd, pricing.trade_impact_fee_scalar)
    return base_fee(size_usd, total_bps)


def close_fee(size_usd: int, pricing: CustodyPricing) -> int:
    total_bps = pricing.decrease_position_bps + price_impact_fee_bps(size_usd, pricing.trade_impact_fee_scalar)
    return base_fee(size_usd, total_bps)


def funding_fee(size_usd: int, cumulative_rate: int, rate_snapshot: int) -> int:
    """Positive means the position pays."""
    return tdiv((cumulative_rate - rate_snapshot) * size_usd, RATE_POWER)


def liquidation_price(position: PositionState, pricing: CustodyPricing) -> Optional[int]:
    """
    Price at which the position's margin no longer covers its maximum loss
    plus closing and funding fees. None for a closed (zero size) position.

    When the margin exceeds the maximum loss the price moves the "wrong" way
    (up for longs, down for shorts); this happens when funding dominates.
    """
    if position.size_usd == 0:
        return None

    total_fees = close_fee(position.size_usd, pricing) + funding_fee(
        position.size_usd,
        pricing.cumulative_interest_rate,
        position.cumulative_interest_snapshot,
    )
    max_loss = tdiv(position.size_usd * BPS_POWER, pricing.max_leverage) + total_fees
    margin = position.collateral_usd

    price_delta = tdiv(abs(max_loss - margin) * position.price, position.size_usd)

    if position.side == Side.LONG:
        return position.price - price_delta if max_loss > margin else position.price + price_delta
    return position.price + price_delta if max_loss > margin else position.price - price_delta


def position_pnl(side: Side, size_usd: int, entry_price: int, mark_price: int) -> int:
    """Unrealised PnL before fees at `mark_price`."""
    if entry_price == 0:
        return 0
    pnl = size_usd * abs(mark_price - entry_price) // entry_price
    if side == Side.LONG:
        has_profit = mark_price > entry_price
    else:
        has_profit = entry_price > mark_price
    return pnl if has_profit else -pnl
