from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from src.core.entities.events import (
    ConditionalOrderCreated,
    ConditionalOrderUpdated,
    DomainEvent,
    Side,
)
from src.core.entities.money import UsdValue, format_atomic


class TradeStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"


def make_trade_id(position_key: str, ordinal: int) -> str:
    return f"{position_key}-{ordinal}"


class ConditionalOrderView(BaseModel):
    """A TP/SL order attached to a trade, with its direction resolved."""
    request_key: str
    role: str  # "take_profit" | "stop_loss" | "unknown"
    trigger_price: UsdValue
    entire_position: bool
    size_usd_delta: UsdValue
    is_update: bool
    signature: str
    at: Optional[datetime] = None


class TradeRecord(BaseModel):
    """
    Flat, serialisable view of a Trade. Monetary fields come in pairs:
    the raw atomic integer and its formatted USD string.
    """
    trade_id: str
    position_key: str
    lifecycle_ordinal: int
    side: Side
    status: TradeStatus
    owner: str
    asset: str
    entry_price: int
    entry_price_usd: str
    exit_price: Optional[int] = None
    exit_price_usd: Optional[str] = None
    current_size: int
    current_size_usd: str
    max_size_reached: int
    max_size_reached_usd: str
    collateral: int
    collateral_usd: str
    leverage: float
    cumulative_pnl: int
    cumulative_pnl_usd: str
    roi: float
    cumulative_fees: int
    cumulative_fees_usd: str
    has_profit: Optional[bool] = None
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None
    event_count: int
    signatures: List[str]


class Trade(BaseModel):
    """
    One open->close lifecycle of a reused position account.
    All monetary fields are atomic USD integers (10^-6 dollars).
    """
    trade_id: str
    position_key: str
    lifecycle_ordinal: int
    side: Side
    status: TradeStatus = TradeStatus.ACTIVE
    owner: str
    asset: str
    entry_price: int
    exit_price: Optional[int] = None
    current_size: int
    max_size_reached: int
    collateral: int
    leverage: float
    cumulative_pnl: int = 0
    roi: float = 0.0
    cumulative_fees: int = 0
    has_profit: Optional[bool] = None
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None
    events: List[DomainEvent] = []

    @property
    def is_active(self) -> bool:
        return self.status == TradeStatus.ACTIVE

    def conditional_orders(self) -> List[ConditionalOrderView]:
        """
        TP/SL orders in event order. Update payloads carry no trigger
        direction, so it is taken from the create event with the same
        request key.
        """
        roles = {}
        views = []
        for event in self.events:
            if isinstance(event, ConditionalOrderCreated):
                if event.trigger_above_threshold is None:
                    role = "unknown"
                else:
                    role = "take_profit" if event.trigger_above_threshold else "stop_loss"
                roles[event.request_key] = role
                is_update = False
            elif isinstance(event, ConditionalOrderUpdated):
                role = roles.get(event.request_key, "unknown")
                is_update = True
            else:
                continue
            views.append(ConditionalOrderView(
                request_key=event.request_key,
                role=role,
                trigger_price=event.trigger_price,
                entire_position=event.entire_position,
                size_usd_delta=event.size_usd_delta,
                is_update=is_update,
                signature=event.context.signature,
                at=event.context.timestamp,
            ))
        return views

    def to_record(self) -> TradeRecord:
        return TradeRecord(
            trade_id=self.trade_id,
            position_key=self.position_key,
            lifecycle_ordinal=self.lifecycle_ordinal,
            side=self.side,
            status=self.status,
            owner=self.owner,
            asset=self.asset,
            entry_price=self.entry_price,
            entry_price_usd=format_atomic(self.entry_price),
            exit_price=self.exit_price,
            exit_price_usd=format_atomic(self.exit_price) if self.exit_price is not None else None,
            current_size=self.current_size,
            current_size_usd=format_atomic(self.current_size),
            max_size_reached=self.max_size_reached,
            max_size_reached_usd=format_atomic(self.max_size_reached),
            collateral=self.collateral,
            collateral_usd=format_atomic(self.collateral),
            leverage=self.leverage,
            cumulative_pnl=self.cumulative_pnl,
            cumulative_pnl_usd=format_atomic(self.cumulative_pnl),
            roi=self.roi,
            cumulative_fees=self.cumulative_fees,
            cumulative_fees_usd=format_atomic(self.cumulative_fees),
            has_profit=self.has_profit,
            open_time=self.open_time,
            close_time=self.close_time,
            event_count=len(self.events),
            signatures=list(dict.fromkeys(e.context.signature for e in self.events)),
        )


class IssueCode(str, Enum):
    MISSING_OPENING_EVENT = "missing_opening_event"
    SIZE_MISMATCH = "size_mismatch"


class DataConsistencyError(BaseModel):
    """An event the grouper could not reconcile with the trades it holds."""
    code: IssueCode
    position_key: str
    signature: str
    event_name: str
    message: str


class ReconstructionResult(BaseModel):
    active_trades: List[Trade] = []
    completed_trades: List[Trade] = []
    data_errors: List[DataConsistencyError] = []
    unattached_events: List[str] = []  # "<signature>:<sub_event_index>"
