import logging
import asyncio
from typing import AsyncIterator, List, Optional
import psycopg2
from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# --- Imports ---
from src import config
from src.core.entities.record import FetchGap, IdentifierFailure
from src.core.entities.trade import DataConsistencyError, TradeRecord
from src.core.errors import AccountDecodeError, UnrecoverableIOError, WindowValidationError
from src.core.interfaces.record_source import IPayloadDecoder, IRecordSource
from src.core.services import LiquidationQuote, RiskService, TradeHistoryService
from src.core.use_cases.fee_model import CustodyPricing
from src.infrastructure.cache.cached_source import CachedRecordSource
from src.infrastructure.cache.redis_service import RedisService
from src.infrastructure.gateways.anchor_decoder import AnchorLayoutDecoder
from src.infrastructure.gateways.solana_rpc import SolanaRpcGateway
from src.infrastructure.persistence.postgres_repo import TradeRepo

# Setup Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("TradeTrace")

app = FastAPI(title="TradeTrace API", version="2.0.0", description="Perpetuals trade-history reconstruction API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Request / Response Models ---

class HistoryRequest(BaseModel):
    identifiers: List[str] = Field(..., min_length=1)
    owner: Optional[str] = None
    windowStart: int = Field(..., description="Newer bound, unix seconds")
    windowEnd: int = Field(..., description="Older bound, unix seconds")


class HistoryResponse(BaseModel):
    activeTrades: List[TradeRecord]
    completedTrades: List[TradeRecord]
    dataErrors: List[DataConsistencyError]
    unattachedEvents: List[str]
    fetchGaps: List[FetchGap]
    identifierFailures: List[IdentifierFailure]


class LiquidationRequest(BaseModel):
    identifier: str
    pricing: CustodyPricing

# --- Dependency Injection ---

async def get_record_source() -> AsyncIterator[IRecordSource]:
    gateway = SolanaRpcGateway()
    cache = RedisService()
    try:
        yield CachedRecordSource(gateway, cache) if cache.enabled else gateway
    finally:
        await gateway.close()


def get_payload_decoder() -> IPayloadDecoder:
    return AnchorLayoutDecoder()


def get_settings() -> config.IngestionSettings:
    return config.IngestionSettings()


def get_repo() -> Optional[TradeRepo]:
    if not config.DATABASE_URL:
        return None
    try:
        return TradeRepo(config.DATABASE_URL)
    except psycopg2.Error as e:
        logger.error(f"Failed to connect to DB: {e}")
        return None

# --- Endpoints ---

@app.get("/health")
async def health():
    return {"status": "healthy", "mode": "Solana JSON-RPC via Gateway"}


async def _reconstruct(request: HistoryRequest, source, decoder, settings):
    service = TradeHistoryService(source, decoder, settings)
    try:
        return await service.reconstruct(
            request.identifiers, request.owner, request.windowStart, request.windowEnd
        )
    except WindowValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())


@app.post("/v1/trades/history", response_model=HistoryResponse)
async def get_trade_history(
    request: HistoryRequest,
    source: IRecordSource = Depends(get_record_source),
    decoder: IPayloadDecoder = Depends(get_payload_decoder),
    settings: config.IngestionSettings = Depends(get_settings)
):
    """
    Rebuilds open and closed trades for the given position accounts over
    [windowEnd, windowStart]. Partial failures are reported, not raised.
    """
    result = await _reconstruct(request, source, decoder, settings)
    records = result.records()

    return HistoryResponse(
        activeTrades=records["active"],
        completedTrades=records["completed"],
        dataErrors=result.data_errors,
        unattachedEvents=result.unattached_events,
        fetchGaps=result.fetch_gaps,
        identifierFailures=result.identifier_failures,
    )


@app.post("/v1/positions/liquidation-price", response_model=LiquidationQuote)
async def get_liquidation_price(
    request: LiquidationRequest,
    source: IRecordSource = Depends(get_record_source),
    decoder: IPayloadDecoder = Depends(get_payload_decoder),
    settings: config.IngestionSettings = Depends(get_settings)
):
    service = RiskService(source, decoder, settings)
    try:
        quote = await service.liquidation_price(request.identifier, request.pricing)
    except AccountDecodeError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except UnrecoverableIOError as e:
        raise HTTPException(status_code=502, detail=e.to_dict())

    if quote is None:
        raise HTTPException(status_code=404, detail=f"Position account {request.identifier} not found")
    return quote


@app.post("/v1/sync")
async def sync_data(
    request: HistoryRequest,
    source: IRecordSource = Depends(get_record_source),
    decoder: IPayloadDecoder = Depends(get_payload_decoder),
    settings: config.IngestionSettings = Depends(get_settings),
    repo: Optional[TradeRepo] = Depends(get_repo)
):
    """
    Reconstructs trades and persists them to Postgres.
    """
    if not repo:
        raise HTTPException(status_code=503, detail="Database not configured or unavailable")

    result = await _reconstruct(request, source, decoder, settings)
    records = result.records()
    trades = records["active"] + records["completed"]

    # Persist to DB (Offload to thread to avoid blocking async loop)
    saved = await asyncio.to_thread(repo.bulk_insert_trades, trades)

    return {
        "status": "success",
        "stats": {
            "trades_saved": saved,
            "data_errors": len(result.data_errors),
            "fetch_gaps": len(result.fetch_gaps),
            "identifier_failures": len(result.identifier_failures),
        },
    }
