import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from src import config
from src.core.entities.events import (
    ConditionalOrderCreated,
    ConditionalOrderUpdated,
    DomainEvent,
    EventContext,
    EventKind,
    LimitOrderCreated,
    LimitOrderFilled,
    LimitOrderUpdated,
    PoolSwap,
    PositionDecreased,
    PositionIncreased,
    PositionLiquidated,
    PostSwap,
    PreSwap,
    RequestChange,
    RequestCreated,
    RequestType,
    Side,
    UnhandledEvent,
)
from src.core.entities.money import UsdValue
from src.core.entities.record import RawRecord
from src.core.errors import PayloadDecodeError
from src.core.interfaces.record_source import IPayloadDecoder

logger = logging.getLogger(__name__)

DISCRIMINATOR_SIZE = 8

# Program event name -> domain kind. Names mapped to UNHANDLED are known to
# the program but carry nothing the reconstruction uses.
EVENT_KINDS: Dict[str, EventKind] = {
    "IncreasePositionEvent": EventKind.POSITION_INCREASED,
    "InstantIncreasePositionEvent": EventKind.POSITION_INCREASED,
    "DecreasePositionEvent": EventKind.POSITION_DECREASED,
    "InstantDecreasePositionEvent": EventKind.POSITION_DECREASED,
    "LiquidateFullPositionEvent": EventKind.POSITION_LIQUIDATED,
    "IncreasePositionPreSwapEvent": EventKind.PRE_SWAP,
    "DecreasePositionPostSwapEvent": EventKind.POST_SWAP,
    "PoolSwapEvent": EventKind.POOL_SWAP,
    "PoolSwapExactOutEvent": EventKind.POOL_SWAP,
    "InstantCreateTpslEvent": EventKind.CONDITIONAL_ORDER_CREATED,
    "InstantUpdateTpslEvent": EventKind.CONDITIONAL_ORDER_UPDATED,
    "InstantCreateLimitOrderEvent": EventKind.LIMIT_ORDER_CREATED,
    "InstantUpdateLimitOrderEvent": EventKind.LIMIT_ORDER_UPDATED,
    "FillLimitOrderEvent": EventKind.LIMIT_ORDER_FILLED,
    "CreatePositionRequestEvent": EventKind.REQUEST_CREATED,
    "ClosePositionRequestEvent": EventKind.UNHANDLED,
    "AddLiquidityEvent": EventKind.UNHANDLED,
    "RemoveLiquidityEvent": EventKind.UNHANDLED,
}


# Program event name -> the instruction whose params complete it.
EVENT_INSTRUCTIONS: Dict[str, str] = {
    "InstantCreateTpslEvent": "instant_create_tpsl",
    "InstantUpdateTpslEvent": "instant_update_tpsl",
    "InstantCreateLimitOrderEvent": "instant_create_limit_order",
    "InstantUpdateLimitOrderEvent": "instant_update_limit_order",
}


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def to_datetime(unix_seconds: Optional[int]) -> Optional[datetime]:
    if unix_seconds is None:
        return None
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc)


def _usd(fields: Mapping[str, Any], key: str) -> UsdValue:
    return UsdValue.from_atomic(fields.get(key) or 0)


class EventDecoder:
    """
    Turns raw record sub-events into typed DomainEvents.

    Every sub-event is treated the same way regardless of whether it came
    from an inner or an outer instruction. A payload that fails to decode
    is dropped on its own; the rest of the record is still decoded.
    Top-level instruction params are decoded first and merged into the
    events they emit, since some arguments never reach the event body.
    """

    def __init__(
        self,
        payload_decoder: IPayloadDecoder,
        side_values: Optional[Mapping[int, str]] = None,
        request_type_values: Optional[Mapping[int, str]] = None,
        request_change_values: Optional[Mapping[int, str]] = None,
        custody_symbols: Optional[Mapping[str, str]] = None
    ):
        self.payload_decoder = payload_decoder
        self.side_values = side_values if side_values is not None else config.SIDE_VALUES
        self.request_type_values = request_type_values if request_type_values is not None else config.REQUEST_TYPE_VALUES
        self.request_change_values = request_change_values if request_change_values is not None else config.REQUEST_CHANGE_VALUES
        self.custody_symbols = custody_symbols if custody_symbols is not None else config.CUSTODY_SYMBOLS
        self._names_by_discriminator = {event_discriminator(name): name for name in EVENT_KINDS}
        self._instructions_by_discriminator = {
            instruction_discriminator(name): name for name in EVENT_INSTRUCTIONS.values()
        }

        self._builders: Dict[EventKind, Callable[[str, EventContext, Dict[str, Any]], DomainEvent]] = {
            EventKind.POSITION_INCREASED: self._position_increased,
            EventKind.POSITION_DECREASED: self._position_decreased,
            EventKind.POSITION_LIQUIDATED: self._position_liquidated,
            EventKind.PRE_SWAP: self._pre_swap,
            EventKind.POST_SWAP: self._post_swap,
            EventKind.POOL_SWAP: self._pool_swap,
            EventKind.CONDITIONAL_ORDER_CREATED: self._conditional_order_created,
            EventKind.CONDITIONAL_ORDER_UPDATED: self._conditional_order_updated,
            EventKind.LIMIT_ORDER_CREATED: self._limit_order_created,
            EventKind.LIMIT_ORDER_UPDATED: self._limit_order_updated,
            EventKind.LIMIT_ORDER_FILLED: self._limit_order_filled,
            EventKind.REQUEST_CREATED: self._request_created,
        }

    def decode_record(self, record: RawRecord) -> List[DomainEvent]:
        params = self._instruction_params(record)
        events: List[DomainEvent] = []
        for sub_event in record.sub_events:
            data = sub_event.data
            if len(data) < DISCRIMINATOR_SIZE:
                continue

            name = self._names_by_discriminator.get(data[:DISCRIMINATOR_SIZE])
            if name is None:
                continue

            context = EventContext(
                signature=record.signature,
                block_time=record.block_time,
                timestamp=to_datetime(record.block_time),
                slot=record.slot,
                sub_event_index=sub_event.index,
                tx_fee_lamports=record.fee_lamports,
            )
            # the k-th event of a kind pairs with the k-th instruction of its kind
            queued = params.get(EVENT_INSTRUCTIONS.get(name))
            instruction = queued.pop(0) if queued else None
            event = self._decode_one(name, context, data[DISCRIMINATOR_SIZE:], instruction)
            if event is not None:
                events.append(event)
        return events

    def _instruction_params(self, record: RawRecord) -> Dict[str, List[Dict[str, Any]]]:
        """Decoded params of the record's top-level program instructions, in order."""
        params: Dict[str, List[Dict[str, Any]]] = {}
        for sub_event in record.sub_events:
            if sub_event.inner:
                continue
            name = self._instructions_by_discriminator.get(sub_event.data[:DISCRIMINATOR_SIZE])
            if name is None:
                continue
            try:
                fields = self.payload_decoder.decode_instruction(name, sub_event.data[DISCRIMINATOR_SIZE:])
            except PayloadDecodeError as e:
                logger.debug(f"Skipping {name} params in {record.signature}: {e.message}")
                continue
            params.setdefault(name, []).append(fields)
        return params

    def _decode_one(
        self,
        name: str,
        context: EventContext,
        body: bytes,
        instruction: Optional[Dict[str, Any]] = None
    ) -> Optional[DomainEvent]:
        kind = EVENT_KINDS[name]
        try:
            fields = self.payload_decoder.decode(name, body)
        except PayloadDecodeError as e:
            if kind == EventKind.UNHANDLED:
                return UnhandledEvent(name=name, context=context, fields={"raw": body.hex()})
            logger.debug(f"Dropping {name} in {context.signature}#{context.sub_event_index}: {e.message}")
            return None

        if instruction:
            fields = {**instruction, **fields}

        if kind == EventKind.UNHANDLED:
            return UnhandledEvent(
                name=name,
                context=context,
                position_key=fields.get("position_key"),
                fields=fields,
            )

        try:
            return self._builders[kind](name, context, fields)
        except (KeyError, ValueError, TypeError) as e:
            logger.debug(f"Dropping {name} in {context.signature}#{context.sub_event_index}: {e}")
            return None

    # --- enum tables ---

    def _lookup(self, table: Mapping[int, str], enum_cls, value: Any, field: str, context: EventContext):
        label = table.get(value)
        if label is None:
            logger.warning(f"Unexpected {field} value {value!r} in {context.signature}")
            return enum_cls.UNKNOWN
        return enum_cls(label)

    def _side(self, fields: Dict[str, Any], context: EventContext) -> Side:
        return self._lookup(self.side_values, Side, fields.get("position_side"), "position_side", context)

    def _request_type(self, fields: Dict[str, Any], context: EventContext) -> RequestType:
        # Instant variants carry no request type; they execute at market.
        if "request_type" not in fields:
            return RequestType.MARKET
        return self._lookup(self.request_type_values, RequestType, fields["request_type"], "request_type", context)

    def _asset(self, custody: str) -> str:
        return self.custody_symbols.get(custody, "UNKNOWN")

    # --- builders ---

    def _position_increased(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PositionIncreased:
        return PositionIncreased(
            name=name,
            context=context,
            position_key=fields["position_key"],
            side=self._side(fields, context),
            owner=fields["owner"],
            position_custody=fields["position_custody"],
            collateral_custody=fields["position_collateral_custody"],
            asset=self._asset(fields["position_custody"]),
            position_size_usd=_usd(fields, "position_size_usd"),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            collateral_usd_delta=_usd(fields, "collateral_usd_delta"),
            price=_usd(fields, "price"),
            fee_usd=_usd(fields, "fee_usd"),
            request_type=self._request_type(fields, context),
            request_key=fields.get("position_request_key"),
            update_time=to_datetime(fields.get("update_time")),
        )

    def _position_decreased(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PositionDecreased:
        return PositionDecreased(
            name=name,
            context=context,
            position_key=fields["position_key"],
            side=self._side(fields, context),
            owner=fields["owner"],
            position_custody=fields["position_custody"],
            collateral_custody=fields["position_collateral_custody"],
            asset=self._asset(fields["position_custody"]),
            position_size_usd=_usd(fields, "position_size_usd"),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            collateral_usd_delta=_usd(fields, "collateral_usd_delta"),
            price=_usd(fields, "price"),
            fee_usd=_usd(fields, "fee_usd"),
            has_profit=bool(fields["has_profit"]),
            pnl_delta=_usd(fields, "pnl_delta"),
            transfer_amount_token=fields.get("transfer_token") or 0,
            request_type=self._request_type(fields, context),
            request_key=fields.get("position_request_key"),
            update_time=to_datetime(fields.get("update_time")),
        )

    def _position_liquidated(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PositionLiquidated:
        return PositionLiquidated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            side=self._side(fields, context),
            owner=fields["owner"],
            position_custody=fields["position_custody"],
            collateral_custody=fields["position_collateral_custody"],
            asset=self._asset(fields["position_custody"]),
            position_size_usd=_usd(fields, "position_size_usd"),
            price=_usd(fields, "price"),
            fee_usd=_usd(fields, "fee_usd"),
            liquidation_fee_usd=_usd(fields, "liquidation_fee_usd"),
            has_profit=bool(fields["has_profit"]),
            pnl_delta=_usd(fields, "pnl_delta"),
            transfer_amount_token=fields.get("transfer_token") or 0,
            update_time=to_datetime(fields.get("update_time")),
        )

    def _pre_swap(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PreSwap:
        return PreSwap(
            name=name,
            context=context,
            request_key=fields["position_request_key"],
            transfer_amount=fields["transfer_amount"],
            collateral_custody_pre_swap_amount=fields["collateral_custody_pre_swap_amount"],
        )

    def _post_swap(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PostSwap:
        return PostSwap(
            name=name,
            context=context,
            request_key=fields["position_request_key"],
            swap_amount=fields["swap_amount"],
            minimum_out=fields.get("minimum_out"),
        )

    def _pool_swap(self, name: str, context: EventContext, fields: Dict[str, Any]) -> PoolSwap:
        return PoolSwap(
            name=name,
            context=context,
            custody_in=fields["custody_in"],
            custody_out=fields["custody_out"],
            swap_usd_amount=_usd(fields, "swap_usd_amount"),
            amount_in=fields["amount_in"],
            amount_out=fields["amount_out"],
            fee_bps=fields.get("fee_bps") or 0,
        )

    def _conditional_order_created(self, name: str, context: EventContext, fields: Dict[str, Any]) -> ConditionalOrderCreated:
        return ConditionalOrderCreated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            trigger_price=_usd(fields, "trigger_price"),
            trigger_above_threshold=fields.get("trigger_above_threshold"),
            entire_position=bool(fields["entire_position"]),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            request_time=to_datetime(fields.get("request_time")),
        )

    def _conditional_order_updated(self, name: str, context: EventContext, fields: Dict[str, Any]) -> ConditionalOrderUpdated:
        return ConditionalOrderUpdated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            trigger_price=_usd(fields, "trigger_price"),
            entire_position=bool(fields["entire_position"]),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            request_time=to_datetime(fields.get("request_time")),
        )

    def _limit_order_created(self, name: str, context: EventContext, fields: Dict[str, Any]) -> LimitOrderCreated:
        return LimitOrderCreated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            side=self._side(fields, context),
            limit_price=_usd(fields, "limit_price"),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            collateral_token_delta=fields.get("collateral_token_delta") or 0,
            request_time=to_datetime(fields.get("request_time")),
        )

    def _limit_order_updated(self, name: str, context: EventContext, fields: Dict[str, Any]) -> LimitOrderUpdated:
        return LimitOrderUpdated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            limit_price=_usd(fields, "limit_price"),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            request_time=to_datetime(fields.get("request_time")),
        )

    def _limit_order_filled(self, name: str, context: EventContext, fields: Dict[str, Any]) -> LimitOrderFilled:
        return LimitOrderFilled(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            side=self._side(fields, context),
            price=_usd(fields, "price"),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            collateral_usd_delta=_usd(fields, "collateral_usd_delta"),
            fee_usd=_usd(fields, "fee_usd"),
            position_size_usd=_usd(fields, "position_size_usd"),
        )

    def _request_created(self, name: str, context: EventContext, fields: Dict[str, Any]) -> RequestCreated:
        trigger_price = fields.get("trigger_price")
        return RequestCreated(
            name=name,
            context=context,
            position_key=fields["position_key"],
            owner=fields["owner"],
            request_key=fields["position_request_key"],
            side=self._side(fields, context),
            request_change=self._lookup(
                self.request_change_values, RequestChange, fields.get("request_change"), "request_change", context
            ),
            request_type=self._request_type(fields, context),
            size_usd_delta=_usd(fields, "size_usd_delta"),
            collateral_delta=fields.get("collateral_delta") or 0,
            trigger_price=UsdValue.from_atomic(trigger_price) if trigger_price is not None else None,
        )
