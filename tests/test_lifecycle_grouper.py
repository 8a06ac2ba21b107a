import pytest

from src.core.entities.events import EventKind
from src.core.entities.trade import IssueCode, TradeStatus
from src.core.use_cases.lifecycle_grouper import LifecycleGrouper, order_events
from factories import (
    OTHER_POSITION_KEY,
    POSITION_KEY,
    T0,
    decrease,
    increase,
    liquidate,
    pool_swap,
    tpsl_created,
    tpsl_updated,
    with_context,
)


@pytest.fixture
def grouper():
    return LifecycleGrouper()


def test_leverage_is_size_over_collateral(grouper):
    result = grouper.group([increase(size=1000, collateral=100, t=T0)])

    [trade] = result.active_trades
    assert trade.leverage == 10.0
    assert trade.trade_id == f"{POSITION_KEY}-0"
    assert trade.status == TradeStatus.ACTIVE


def test_two_increases_then_full_close(grouper):
    events = [
        increase(size=500, collateral=50, t=T0),
        increase(size=500, collateral=50, t=T0 + 10),
        decrease(size=1000, pnl=30, t=T0 + 20, remaining=0),
    ]

    # leverage just before the close
    before_close = grouper.group(events[:2]).active_trades[0]
    assert before_close.leverage == 10.0

    result = grouper.group(events)

    assert result.active_trades == []
    [trade] = result.completed_trades
    assert trade.status == TradeStatus.CLOSED
    assert trade.current_size == 0
    assert trade.cumulative_pnl == 30
    assert trade.collateral == 100
    assert trade.max_size_reached == 1000
    assert trade.roi == pytest.approx(30.0)
    assert trade.close_time.timestamp() == T0 + 20


def test_decrease_without_open_trade_is_reported_and_processing_continues(grouper):
    events = [
        decrease(size=100, pnl=5, t=T0, remaining=0),
        increase(size=1000, collateral=100, t=T0 + 10),
    ]

    result = grouper.group(events)

    assert len(result.data_errors) == 1
    assert result.data_errors[0].code == IssueCode.MISSING_OPENING_EVENT
    assert result.completed_trades == []
    [trade] = result.active_trades
    assert trade.lifecycle_ordinal == 0
    assert trade.current_size == 1000


def test_liquidation_without_open_trade_is_reported(grouper):
    result = grouper.group([liquidate(size=100, pnl=5, t=T0)])

    assert result.active_trades == result.completed_trades == []
    assert [e.code for e in result.data_errors] == [IssueCode.MISSING_OPENING_EVENT]


def test_ordinals_increment_once_per_termination(grouper):
    events = [
        increase(size=100, collateral=10, t=T0),
        decrease(size=100, pnl=1, t=T0 + 1, remaining=0),
        increase(size=200, collateral=20, t=T0 + 2),
        liquidate(size=200, pnl=20, t=T0 + 3),
        increase(size=300, collateral=30, t=T0 + 4),
    ]

    result = grouper.group(events)

    ordinals = sorted(t.lifecycle_ordinal for t in result.completed_trades + result.active_trades)
    assert ordinals == [0, 1, 2]
    assert result.active_trades[0].trade_id == f"{POSITION_KEY}-2"
    # most recently closed first
    assert [t.lifecycle_ordinal for t in result.completed_trades] == [1, 0]


def test_liquidation_closes_with_fees_and_zero_size(grouper):
    events = [
        increase(size=1000, collateral=100, t=T0, fee=2),
        liquidate(size=1000, pnl=95, t=T0 + 5, fee=3, liquidation_fee=4, price=90),
    ]

    [trade] = grouper.group(events).completed_trades

    assert trade.status == TradeStatus.LIQUIDATED
    assert trade.current_size == 0
    assert trade.exit_price == 90
    assert trade.cumulative_pnl == -95
    assert trade.cumulative_fees == 2 + 3 + 4
    assert trade.has_profit is False


def test_size_invariants_hold_after_every_event(grouper):
    events = [
        increase(size=1000, collateral=100, t=T0),
        decrease(size=400, pnl=10, t=T0 + 1, remaining=600),
        increase(size=200, collateral=0, t=T0 + 2),
        decrease(size=800, pnl=5, has_profit=False, t=T0 + 3, remaining=0),
        increase(size=50, collateral=5, t=T0 + 4),
    ]

    for n in range(1, len(events) + 1):
        result = grouper.group(events[:n])
        for trade in result.active_trades + result.completed_trades:
            assert (trade.current_size == 0) == (trade.status != TradeStatus.ACTIVE)
            assert trade.max_size_reached >= trade.current_size


def test_partial_decrease_below_zero_resyncs_to_chain(grouper):
    events = [
        increase(size=100, collateral=10, t=T0),
        decrease(size=150, pnl=1, t=T0 + 1, remaining=50),
    ]

    result = grouper.group(events)

    [trade] = result.active_trades
    assert trade.current_size == 50
    assert [e.code for e in result.data_errors] == [IssueCode.SIZE_MISMATCH]


def test_grouping_is_deterministic(grouper):
    events = [
        increase(size=500, collateral=50, t=T0),
        tpsl_created(t=T0, sig="tp", above=True),
        pool_swap(t=T0 + 5, sig="close"),
        decrease(size=500, pnl=7, t=T0 + 5, remaining=0, sig="close"),
        increase(size=100, collateral=10, t=T0 + 6, key=OTHER_POSITION_KEY),
    ]

    first = grouper.group(events)
    second = grouper.group(events)

    assert first.model_dump_json() == second.model_dump_json()


def test_terminal_decrease_is_ordered_before_same_time_swap(grouper):
    swap = pool_swap(t=T0 + 5, sig="close", index=1)
    close = decrease(size=500, pnl=7, t=T0 + 5, remaining=0, sig="close")
    events = [increase(size=500, collateral=50, t=T0), swap, close]

    assert [e.kind for e in order_events(events)] == [
        EventKind.POSITION_INCREASED,
        EventKind.POSITION_DECREASED,
        EventKind.POOL_SWAP,
    ]

    [trade] = grouper.group(events).completed_trades
    assert [e.kind for e in trade.events] == [
        EventKind.POSITION_INCREASED,
        EventKind.POSITION_DECREASED,
        EventKind.POOL_SWAP,
    ]


def test_same_time_events_attach_once_and_respect_position_key(grouper):
    events = [
        increase(size=500, collateral=50, t=T0, sig="open"),
        pool_swap(t=T0, sig="open"),
        pool_swap(t=T0, sig="open", index=2),
        tpsl_created(t=T0, sig="other-tp", above=True, key=OTHER_POSITION_KEY),
    ]

    result = grouper.group(events)

    [trade] = result.active_trades
    kinds = [e.kind for e in trade.events]
    # second swap in the same record is a duplicate by (signature, kind)
    assert kinds == [EventKind.POSITION_INCREASED, EventKind.POOL_SWAP]
    assert "open:2" in result.unattached_events
    assert "other-tp:0" in result.unattached_events


def test_order_events_without_active_trade_are_unattached_not_errors(grouper):
    result = grouper.group([tpsl_created(t=T0, sig="tp", above=False)])

    assert result.active_trades == []
    assert result.data_errors == []
    assert result.unattached_events == ["tp:0"]


def test_each_event_belongs_to_one_trade(grouper):
    # close and reopen in the same second: the swap joins the first lifecycle only
    events = [
        increase(size=100, collateral=10, t=T0),
        decrease(size=100, pnl=1, t=T0 + 5, remaining=0, sig="flip"),
        increase(size=200, collateral=20, t=T0 + 5, sig="reopen"),
        pool_swap(t=T0 + 5, sig="flip"),
    ]

    result = grouper.group(events)

    attached = [e.event_id for t in result.active_trades + result.completed_trades for e in t.events]
    assert len(attached) == len(set(attached))
    [closed] = result.completed_trades
    assert EventKind.POOL_SWAP in [e.kind for e in closed.events]


def test_conditional_order_update_takes_direction_from_create(grouper):
    events = [
        increase(size=100, collateral=10, t=T0),
        tpsl_created(t=T0 + 1, sig="tp", above=True),
        tpsl_updated(t=T0 + 2, sig="tp-move"),
    ]

    [trade] = grouper.group(events).active_trades
    orders = trade.conditional_orders()

    assert [(o.role, o.is_update) for o in orders] == [("take_profit", False), ("take_profit", True)]
    assert orders[1].trigger_price.formatted == "160.000000"


def test_trade_record_carries_raw_and_formatted_amounts(grouper):
    events = [
        increase(size=1_000_000_000, collateral=100_000_000, t=T0, price=150_000_000),
        decrease(size=1_000_000_000, pnl=12_500_000, has_profit=False, t=T0 + 60, remaining=0),
    ]

    [trade] = grouper.group(events).completed_trades
    flat = trade.to_record()

    assert flat.cumulative_pnl == -12_500_000
    assert flat.cumulative_pnl_usd == "-12.500000"
    assert flat.entry_price_usd == "150.000000"
    assert flat.max_size_reached_usd == "1000.000000"
    assert flat.event_count == 2


def test_same_second_records_are_ordered_by_slot(grouper):
    # supplied newest first, as signature pages are
    events = [
        with_context(increase(size=2000, collateral=200, t=T0 + 60, sig="reopen"), slot=101),
        with_context(decrease(size=1000, pnl=5, t=T0 + 60, remaining=0, sig="close"), slot=100),
        with_context(increase(size=1000, collateral=100, t=T0, sig="open"), slot=1),
    ]

    assert [e.context.signature for e in order_events(events)] == ["open", "close", "reopen"]

    result = grouper.group(events)

    [closed] = result.completed_trades
    [active] = result.active_trades
    assert closed.trade_id == f"{POSITION_KEY}-0"
    assert closed.max_size_reached == 1000
    assert active.trade_id == f"{POSITION_KEY}-1"
    assert active.current_size == 2000
    assert result.data_errors == []


def test_same_slot_records_keep_supplied_order(grouper):
    events = [
        increase(size=1000, collateral=100, t=T0, sig="open"),
        decrease(size=1000, pnl=5, t=T0 + 60, remaining=0, sig="close"),
        increase(size=2000, collateral=200, t=T0 + 60, sig="reopen"),
    ]

    result = grouper.group(events)

    assert len(result.completed_trades) == 1
    assert [t.current_size for t in result.active_trades] == [2000]


def test_reopen_keeps_its_own_conditional_orders(grouper):
    events = [
        increase(size=100, collateral=10, t=T0),
        decrease(size=100, pnl=1, t=T0 + 5, remaining=0, sig="close"),
        increase(size=200, collateral=20, t=T0 + 5, sig="reopen"),
        with_context(tpsl_created(t=T0 + 5, sig="reopen", above=False), sub_event_index=1),
        tpsl_created(t=T0 + 5, sig="tp", above=True, request_key=OTHER_POSITION_KEY),
    ]

    result = grouper.group(events)

    [closed] = result.completed_trades
    [active] = result.active_trades
    assert [e.kind for e in closed.events] == [EventKind.POSITION_INCREASED, EventKind.POSITION_DECREASED]
    assert [(e.kind, e.context.signature) for e in active.events] == [
        (EventKind.POSITION_INCREASED, "reopen"),
        (EventKind.CONDITIONAL_ORDER_CREATED, "reopen"),
        (EventKind.CONDITIONAL_ORDER_CREATED, "tp"),
    ]
    assert result.unattached_events == []


def test_conditional_order_without_known_direction(grouper):
    events = [
        increase(size=100, collateral=10, t=T0),
        tpsl_created(t=T0 + 1, sig="tp", above=None),
        tpsl_updated(t=T0 + 2, sig="tp-move"),
    ]

    [trade] = grouper.group(events).active_trades

    assert [o.role for o in trade.conditional_orders()] == ["unknown", "unknown"]
