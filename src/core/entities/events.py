"""
Typed domain events decoded from perpetuals program payloads.

DomainEvent is a closed union discriminated by `kind`; payloads that are known
to the program but not modelled here become UnhandledEvent instead of being
duck-typed.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from src.core.entities.money import UsdValue


class EventKind(str, Enum):
    POSITION_INCREASED = "position_increased"
    POSITION_DECREASED = "position_decreased"
    POSITION_LIQUIDATED = "position_liquidated"
    PRE_SWAP = "pre_swap"
    POST_SWAP = "post_swap"
    POOL_SWAP = "pool_swap"
    CONDITIONAL_ORDER_CREATED = "conditional_order_created"
    CONDITIONAL_ORDER_UPDATED = "conditional_order_updated"
    LIMIT_ORDER_CREATED = "limit_order_created"
    LIMIT_ORDER_UPDATED = "limit_order_updated"
    LIMIT_ORDER_FILLED = "limit_order_filled"
    REQUEST_CREATED = "request_created"
    UNHANDLED = "unhandled"


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"
    UNKNOWN = "unknown"


class RequestType(str, Enum):
    MARKET = "market"
    TRIGGER = "trigger"
    UNKNOWN = "unknown"


class RequestChange(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    UNKNOWN = "unknown"


class EventContext(BaseModel):
    """Back-reference to the record a sub-event was decoded from."""
    model_config = ConfigDict(frozen=True)

    signature: str
    block_time: Optional[int] = None
    timestamp: Optional[datetime] = None
    slot: int = 0
    sub_event_index: int = 0
    tx_fee_lamports: int = 0


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    context: EventContext
    position_key: Optional[str] = None

    @property
    def event_id(self) -> Tuple[str, int]:
        return (self.context.signature, self.context.sub_event_index)

    @property
    def block_time(self) -> int:
        return self.context.block_time or 0


# --- Lifecycle events ---

class PositionIncreased(BaseEvent):
    kind: Literal[EventKind.POSITION_INCREASED] = EventKind.POSITION_INCREASED
    position_key: str
    side: Side
    owner: str
    position_custody: str
    collateral_custody: str
    asset: str
    position_size_usd: UsdValue
    size_usd_delta: UsdValue
    collateral_usd_delta: UsdValue
    price: UsdValue
    fee_usd: UsdValue
    request_type: RequestType = RequestType.MARKET
    request_key: Optional[str] = None
    update_time: Optional[datetime] = None


class PositionDecreased(BaseEvent):
    kind: Literal[EventKind.POSITION_DECREASED] = EventKind.POSITION_DECREASED
    position_key: str
    side: Side
    owner: str
    position_custody: str
    collateral_custody: str
    asset: str
    position_size_usd: UsdValue  # remaining size after this decrease
    size_usd_delta: UsdValue
    collateral_usd_delta: UsdValue
    price: UsdValue
    fee_usd: UsdValue
    has_profit: bool
    pnl_delta: UsdValue
    transfer_amount_token: int = 0
    request_type: RequestType = RequestType.MARKET
    request_key: Optional[str] = None
    update_time: Optional[datetime] = None

    @property
    def signed_pnl_delta(self) -> int:
        return self.pnl_delta.raw if self.has_profit else -self.pnl_delta.raw


class PositionLiquidated(BaseEvent):
    kind: Literal[EventKind.POSITION_LIQUIDATED] = EventKind.POSITION_LIQUIDATED
    position_key: str
    side: Side
    owner: str
    position_custody: str
    collateral_custody: str
    asset: str
    position_size_usd: UsdValue  # size at the moment of liquidation
    price: UsdValue
    fee_usd: UsdValue
    liquidation_fee_usd: UsdValue
    has_profit: bool
    pnl_delta: UsdValue
    transfer_amount_token: int = 0
    update_time: Optional[datetime] = None

    @property
    def signed_pnl_delta(self) -> int:
        return self.pnl_delta.raw if self.has_profit else -self.pnl_delta.raw


# --- Swap context ---

class PreSwap(BaseEvent):
    kind: Literal[EventKind.PRE_SWAP] = EventKind.PRE_SWAP
    request_key: str
    transfer_amount: int
    collateral_custody_pre_swap_amount: int


class PostSwap(BaseEvent):
    kind: Literal[EventKind.POST_SWAP] = EventKind.POST_SWAP
    request_key: str
    swap_amount: int
    minimum_out: Optional[int] = None


class PoolSwap(BaseEvent):
    kind: Literal[EventKind.POOL_SWAP] = EventKind.POOL_SWAP
    custody_in: str
    custody_out: str
    swap_usd_amount: UsdValue
    amount_in: int
    amount_out: int
    fee_bps: int = 0


# --- Orders and requests ---

class ConditionalOrderCreated(BaseEvent):
    kind: Literal[EventKind.CONDITIONAL_ORDER_CREATED] = EventKind.CONDITIONAL_ORDER_CREATED
    position_key: str
    owner: str
    request_key: str
    trigger_price: UsdValue
    # from the instruction params; None when the instruction was not found
    trigger_above_threshold: Optional[bool] = None
    entire_position: bool
    size_usd_delta: UsdValue
    request_time: Optional[datetime] = None


class ConditionalOrderUpdated(BaseEvent):
    """Update payloads omit the trigger direction; see Trade.conditional_orders."""
    kind: Literal[EventKind.CONDITIONAL_ORDER_UPDATED] = EventKind.CONDITIONAL_ORDER_UPDATED
    position_key: str
    owner: str
    request_key: str
    trigger_price: UsdValue
    entire_position: bool
    size_usd_delta: UsdValue
    request_time: Optional[datetime] = None


class LimitOrderCreated(BaseEvent):
    kind: Literal[EventKind.LIMIT_ORDER_CREATED] = EventKind.LIMIT_ORDER_CREATED
    position_key: str
    owner: str
    request_key: str
    side: Side
    limit_price: UsdValue
    size_usd_delta: UsdValue
    collateral_token_delta: int
    request_time: Optional[datetime] = None


class LimitOrderUpdated(BaseEvent):
    kind: Literal[EventKind.LIMIT_ORDER_UPDATED] = EventKind.LIMIT_ORDER_UPDATED
    position_key: str
    owner: str
    request_key: str
    limit_price: UsdValue
    size_usd_delta: UsdValue
    request_time: Optional[datetime] = None


class LimitOrderFilled(BaseEvent):
    kind: Literal[EventKind.LIMIT_ORDER_FILLED] = EventKind.LIMIT_ORDER_FILLED
    position_key: str
    owner: str
    request_key: str
    side: Side
    price: UsdValue
    size_usd_delta: UsdValue
    collateral_usd_delta: UsdValue
    fee_usd: UsdValue
    position_size_usd: UsdValue


class RequestCreated(BaseEvent):
    kind: Literal[EventKind.REQUEST_CREATED] = EventKind.REQUEST_CREATED
    position_key: str
    owner: str
    request_key: str
    side: Side
    request_change: RequestChange
    request_type: RequestType
    size_usd_delta: UsdValue
    collateral_delta: int
    trigger_price: Optional[UsdValue] = None


class UnhandledEvent(BaseEvent):
    kind: Literal[EventKind.UNHANDLED] = EventKind.UNHANDLED
    fields: Dict[str, Any] = {}


DomainEvent = Annotated[
    Union[
        PositionIncreased,
        PositionDecreased,
        PositionLiquidated,
        PreSwap,
        PostSwap,
        PoolSwap,
        ConditionalOrderCreated,
        ConditionalOrderUpdated,
        LimitOrderCreated,
        LimitOrderUpdated,
        LimitOrderFilled,
        RequestCreated,
        UnhandledEvent,
    ],
    Field(discriminator="kind"),
]

LIFECYCLE_KINDS = frozenset({
    EventKind.POSITION_INCREASED,
    EventKind.POSITION_DECREASED,
    EventKind.POSITION_LIQUIDATED,
})

# Swaps are consequences of the lifecycle event they share a record with.
SWAP_KINDS = frozenset({EventKind.POOL_SWAP, EventKind.POST_SWAP})
