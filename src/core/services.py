import asyncio
import logging
import random
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel

from src.config import SIDE_VALUES, IngestionSettings
from src.core.entities.events import DomainEvent, Side
from src.core.entities.money import format_atomic
from src.core.entities.record import FetchGap, IdentifierFailure, RawRecord
from src.core.entities.trade import DataConsistencyError, Trade, TradeRecord
from src.core.errors import AccountDecodeError, Fatal, NotFound, Retryable, UnrecoverableIOError
from src.core.interfaces.record_source import IPayloadDecoder, IRecordSource
from src.core.use_cases.event_decoder import EventDecoder
from src.core.use_cases.event_ingestor import EventIngestor, validate_window
from src.core.use_cases.fee_model import CustodyPricing, PositionState, liquidation_price
from src.core.use_cases.lifecycle_grouper import LifecycleGrouper
from src.core.use_cases.retry import Sleep, retry_with_backoff

logger = logging.getLogger(__name__)

# --- Output Models ---

class TradeHistoryResult(BaseModel):
    active_trades: List[Trade] = []
    completed_trades: List[Trade] = []
    data_errors: List[DataConsistencyError] = []
    unattached_events: List[str] = []
    fetch_gaps: List[FetchGap] = []
    identifier_failures: List[IdentifierFailure] = []

    def records(self) -> Dict[str, List[TradeRecord]]:
        return {
            "active": [t.to_record() for t in self.active_trades],
            "completed": [t.to_record() for t in self.completed_trades],
        }


class LiquidationQuote(BaseModel):
    identifier: str
    side: Side
    entry_price: int
    size_usd: int
    collateral_usd: int
    liquidation_price: Optional[int] = None
    liquidation_price_usd: Optional[str] = None

# --- Business Logic Services ---

class TradeHistoryService:
    def __init__(
        self,
        source: IRecordSource,
        payload_decoder: IPayloadDecoder,
        settings: Optional[IngestionSettings] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random
    ):
        self.ingestor = EventIngestor(source, settings, sleep=sleep, rng=rng)
        self.decoder = EventDecoder(payload_decoder)
        self.grouper = LifecycleGrouper()

    async def reconstruct(
        self,
        identifiers: Sequence[str],
        owner: Optional[str],
        window_start: int,
        window_end: int
    ) -> TradeHistoryResult:
        # 1. Reject a bad window before any request goes out
        validate_window(window_start, window_end)

        # 2. Ingest every identifier, one at a time
        reports, failures = await self.ingestor.fetch_all(identifiers, window_start, window_end)

        # 3. A record touching several identifiers is decoded once. Pages come
        # newest first; reversing keeps same-slot records in execution order.
        records: Dict[str, RawRecord] = {}
        gaps: List[FetchGap] = []
        for report in reports:
            gaps.extend(report.gaps)
            for record in reversed(report.records):
                records.setdefault(record.signature, record)

        # 4. Decode and keep the owner's events
        events: List[DomainEvent] = []
        for record in records.values():
            events.extend(self.decoder.decode_record(record))
        if owner:
            events = [e for e in events if getattr(e, "owner", owner) == owner]
        logger.info(f"Decoded {len(events)} events from {len(records)} records")

        # 5. Group into lifecycles
        result = self.grouper.group(events)
        logger.info(
            f"Reconstructed {len(result.completed_trades)} completed and "
            f"{len(result.active_trades)} active trades, {len(result.data_errors)} data errors"
        )

        return TradeHistoryResult(
            active_trades=result.active_trades,
            completed_trades=result.completed_trades,
            data_errors=result.data_errors,
            unattached_events=result.unattached_events,
            fetch_gaps=gaps,
            identifier_failures=failures,
        )


async def reconstruct_trade_history(
    identifiers: Sequence[str],
    owner: Optional[str],
    window_start: int,
    window_end: int,
    source: IRecordSource,
    payload_decoder: IPayloadDecoder,
    settings: Optional[IngestionSettings] = None,
    sleep: Sleep = asyncio.sleep
) -> TradeHistoryResult:
    service = TradeHistoryService(source, payload_decoder, settings, sleep=sleep)
    return await service.reconstruct(identifiers, owner, window_start, window_end)


class RiskService:
    def __init__(
        self,
        source: IRecordSource,
        payload_decoder: IPayloadDecoder,
        settings: Optional[IngestionSettings] = None,
        sleep: Sleep = asyncio.sleep
    ):
        self.source = source
        self.payload_decoder = payload_decoder
        self.settings = settings or IngestionSettings()
        self._sleep = sleep

    async def liquidation_price(self, identifier: str, pricing: CustodyPricing) -> Optional[LiquidationQuote]:
        """None when the position account does not exist."""
        result = await retry_with_backoff(
            lambda: self.source.get_account_state(identifier),
            self.settings.record_backoff,
            sleep=self._sleep,
            label=f"get_account_state({identifier})",
        )
        if isinstance(result, NotFound):
            return None
        if isinstance(result, (Retryable, Fatal)):
            raise UnrecoverableIOError(result.reason, identifier=identifier)

        account = self.payload_decoder.decode_position_account(result.value)
        side_label = SIDE_VALUES.get(account["side"])
        if side_label is None:
            raise AccountDecodeError(f"unexpected side {account['side']}", details={"identifier": identifier})

        position = PositionState(
            side=Side(side_label),
            price=account["price"],
            size_usd=account["size_usd"],
            collateral_usd=account["collateral_usd"],
            cumulative_interest_snapshot=account["cumulative_interest_snapshot"],
        )
        price = liquidation_price(position, pricing)
        if price is None:
            logger.info(f"Position {identifier} is closed; no liquidation price")

        return LiquidationQuote(
            identifier=identifier,
            side=position.side,
            entry_price=position.price,
            size_usd=position.size_usd,
            collateral_usd=position.collateral_usd,
            liquidation_price=price,
            liquidation_price_usd=format_atomic(price) if price is not None else None,
        )
