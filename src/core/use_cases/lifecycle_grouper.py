import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from src.core.entities.events import (
    LIFECYCLE_KINDS,
    SWAP_KINDS,
    DomainEvent,
    EventKind,
    PositionDecreased,
    PositionIncreased,
    PositionLiquidated,
)
from src.core.entities.trade import (
    DataConsistencyError,
    IssueCode,
    ReconstructionResult,
    Trade,
    TradeStatus,
    make_trade_id,
)

logger = logging.getLogger(__name__)

EventId = Tuple[str, int]


def tie_rank(event: DomainEvent) -> int:
    # Swaps are consequences of the lifecycle event in the same record.
    return 1 if event.kind in SWAP_KINDS else 0


def order_events(events: Iterable[DomainEvent]) -> List[DomainEvent]:
    """
    Stable ascending sort by block time, then slot, then the order records
    were supplied in. Within a record, swaps go after the lifecycle event
    they settle, and the rest keep their sub-event order.
    """
    events = list(events)
    record_order: Dict[str, int] = {}
    for event in events:
        record_order.setdefault(event.context.signature, len(record_order))
    return sorted(events, key=lambda e: (
        e.block_time,
        e.context.slot,
        record_order[e.context.signature],
        tie_rank(e),
        e.context.sub_event_index,
    ))


def _leverage(size: int, collateral: int) -> float:
    return size / collateral if collateral > 0 else 0.0


def _roi(pnl: int, collateral: int) -> float:
    return pnl / collateral * 100 if collateral > 0 else 0.0


class GroupingState:
    """
    Mutable state for one grouping pass. `active` and `ordinals` are keyed by
    position identifier; a fresh state is built for every call to `group`.
    """

    def __init__(self):
        self.active: Dict[str, Trade] = {}
        self.ordinals: Dict[str, int] = {}
        self.completed: List[Trade] = []
        self.data_errors: List[DataConsistencyError] = []
        self.attached: Set[EventId] = set()
        self.attached_kinds: Dict[str, Set[Tuple[str, EventKind]]] = {}

    def attach(self, trade: Trade, event: DomainEvent) -> bool:
        if event.event_id in self.attached:
            return False
        kinds = self.attached_kinds.setdefault(trade.trade_id, set())
        dedupe_key = (event.context.signature, event.kind)
        if dedupe_key in kinds:
            return False
        kinds.add(dedupe_key)
        self.attached.add(event.event_id)
        trade.events.append(event)
        return True

    def terminate(self, trade: Trade) -> None:
        del self.active[trade.position_key]
        self.ordinals[trade.position_key] = trade.lifecycle_ordinal + 1
        self.completed.append(trade)


class LifecycleGrouper:
    """
    Folds a time-ordered event stream into per-identifier trade lifecycles.

    A position identifier is reused across lifecycles; each open -> close (or
    liquidation) is one Trade, numbered by `lifecycle_ordinal`. Decreases and
    liquidations with no open trade are reported, never turned into trades.
    """

    def group(self, events: Iterable[DomainEvent]) -> ReconstructionResult:
        ordered = order_events(events)
        position = {e.event_id: i for i, e in enumerate(ordered)}

        by_time: Dict[int, List[DomainEvent]] = {}
        lifecycle_records: Set[Tuple[str, Optional[str]]] = set()
        for event in ordered:
            by_time.setdefault(event.block_time, []).append(event)
            if event.kind in LIFECYCLE_KINDS:
                lifecycle_records.add((event.context.signature, event.position_key))

        state = GroupingState()
        for event in ordered:
            if event.kind in LIFECYCLE_KINDS:
                trade = self._apply_lifecycle(state, event)
                if trade is not None:
                    self._attach_siblings(state, trade, event, by_time[event.block_time], lifecycle_records)
            elif event.position_key is not None:
                trade = state.active.get(event.position_key)
                if trade is not None:
                    state.attach(trade, event)

        trades = list(state.active.values()) + state.completed
        for trade in trades:
            trade.events.sort(key=lambda e: position[e.event_id])

        completed = sorted(
            state.completed,
            key=lambda t: t.close_time.timestamp() if t.close_time else float("-inf"),
            reverse=True,
        )
        unattached = [
            f"{e.context.signature}:{e.context.sub_event_index}"
            for e in ordered
            if e.kind not in LIFECYCLE_KINDS and e.event_id not in state.attached
        ]

        return ReconstructionResult(
            active_trades=list(state.active.values()),
            completed_trades=completed,
            data_errors=state.data_errors,
            unattached_events=unattached,
        )

    def _attach_siblings(
        self,
        state: GroupingState,
        trade: Trade,
        event: DomainEvent,
        siblings: List[DomainEvent],
        lifecycle_records: Set[Tuple[str, Optional[str]]]
    ) -> None:
        """
        Attach same-second auxiliary events to `trade`. Events from another
        record go to that record's own lifecycle event when it has one, and
        a terminated trade only takes events from its closing record.
        """
        signature = event.context.signature
        for sibling in siblings:
            if sibling.kind in LIFECYCLE_KINDS:
                continue
            if sibling.position_key is not None and sibling.position_key != trade.position_key:
                continue
            if sibling.context.signature != signature:
                if not trade.is_active:
                    continue
                if (sibling.context.signature, trade.position_key) in lifecycle_records:
                    continue
            state.attach(trade, sibling)

    def _apply_lifecycle(self, state: GroupingState, event: DomainEvent) -> Optional[Trade]:
        if isinstance(event, PositionIncreased):
            return self._on_increase(state, event)

        trade = state.active.get(event.position_key)
        if trade is None:
            self._missing_opening(state, event)
            return None

        if isinstance(event, PositionDecreased):
            self._on_decrease(state, trade, event)
        elif isinstance(event, PositionLiquidated):
            self._on_liquidation(state, trade, event)
        return trade

    def _on_increase(self, state: GroupingState, event: PositionIncreased) -> Trade:
        key = event.position_key
        trade = state.active.get(key)
        size_delta = event.size_usd_delta.raw
        collateral_delta = event.collateral_usd_delta.raw

        if trade is None:
            ordinal = state.ordinals.get(key, 0)
            trade = Trade(
                trade_id=make_trade_id(key, ordinal),
                position_key=key,
                lifecycle_ordinal=ordinal,
                side=event.side,
                owner=event.owner,
                asset=event.asset,
                entry_price=event.price.raw,
                current_size=size_delta,
                max_size_reached=size_delta,
                collateral=collateral_delta,
                leverage=_leverage(size_delta, collateral_delta),
                cumulative_fees=event.fee_usd.raw,
                open_time=event.context.timestamp,
            )
            state.active[key] = trade
            logger.info(f"Opened {trade.trade_id} ({trade.side.value} {trade.asset})")
        else:
            trade.current_size += size_delta
            trade.collateral += collateral_delta
            trade.leverage = _leverage(trade.current_size, trade.collateral)
            trade.max_size_reached = max(trade.max_size_reached, trade.current_size)
            trade.cumulative_fees += event.fee_usd.raw

        state.attach(trade, event)
        return trade

    def _on_decrease(self, state: GroupingState, trade: Trade, event: PositionDecreased) -> None:
        trade.cumulative_pnl += event.signed_pnl_delta
        trade.roi = _roi(trade.cumulative_pnl, trade.collateral)
        trade.cumulative_fees += event.fee_usd.raw
        trade.exit_price = event.price.raw
        trade.has_profit = event.has_profit
        state.attach(trade, event)

        remaining = event.position_size_usd.raw
        if remaining == 0:
            trade.current_size = 0
            trade.status = TradeStatus.CLOSED
            trade.close_time = event.context.timestamp
            state.terminate(trade)
            logger.info(f"Closed {trade.trade_id} pnl={trade.cumulative_pnl}")
            return

        trade.current_size -= event.size_usd_delta.raw
        if trade.current_size <= 0:
            # Local size ran out while the chain still reports an open position,
            # so an earlier increase was not observed.
            message = (
                f"Local size {trade.current_size} after partial decrease, "
                f"chain reports {remaining}; resynced"
            )
            logger.error(f"{trade.trade_id}: {message}")
            state.data_errors.append(DataConsistencyError(
                code=IssueCode.SIZE_MISMATCH,
                position_key=trade.position_key,
                signature=event.context.signature,
                event_name=event.name,
                message=message,
            ))
            trade.current_size = remaining

    def _on_liquidation(self, state: GroupingState, trade: Trade, event: PositionLiquidated) -> None:
        trade.status = TradeStatus.LIQUIDATED
        trade.exit_price = event.price.raw
        trade.close_time = event.context.timestamp
        trade.cumulative_pnl += event.signed_pnl_delta
        trade.roi = _roi(trade.cumulative_pnl, trade.collateral)
        trade.cumulative_fees += event.fee_usd.raw + event.liquidation_fee_usd.raw
        trade.has_profit = event.has_profit
        trade.current_size = 0
        state.attach(trade, event)
        state.terminate(trade)
        logger.info(f"Liquidated {trade.trade_id} pnl={trade.cumulative_pnl}")

    def _missing_opening(self, state: GroupingState, event: DomainEvent) -> None:
        message = f"{event.name} for {event.position_key} with no active trade; opening event is missing"
        logger.error(message)
        state.data_errors.append(DataConsistencyError(
            code=IssueCode.MISSING_OPENING_EVENT,
            position_key=event.position_key,
            signature=event.context.signature,
            event_name=event.name,
            message=message,
        ))
