from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class RecordHeader(BaseModel):
    """One entry of a signature page, as returned by `list_records`."""
    model_config = ConfigDict(frozen=True)

    signature: str
    block_time: Optional[int] = None  # unix seconds
    slot: int = 0
    failed: bool = False


class SubEvent(BaseModel):
    """
    One instruction payload inside a record: 8-byte discriminator + body.
    `inner` tells whether it was emitted by an inner (CPI) instruction.
    """
    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    index: int
    data: bytes
    inner: bool = True


class RawRecord(BaseModel):
    """A fetched ledger record. Immutable once fetched."""
    model_config = ConfigDict(frozen=True)

    signature: str
    block_time: Optional[int] = None
    slot: int = 0
    fee_lamports: int = 0
    failed: bool = False
    sub_events: List[SubEvent] = []


class FetchCursor(BaseModel):
    """Backward pagination state for a single identifier."""
    before_signature: Optional[str] = None
    total_fetched: int = 0
    window_start: int  # newer bound, unix seconds
    window_end: int  # older bound, unix seconds


class FetchGap(BaseModel):
    """A page or record that could not be retrieved. Reduces completeness."""
    identifier: str
    scope: str  # "page" | "record"
    reason: str
    signature: Optional[str] = None


class IdentifierFailure(BaseModel):
    """An identifier whose fetch was aborted by a transport failure."""
    identifier: str
    reason: str


class IngestionReport(BaseModel):
    identifier: str
    records: List[RawRecord] = []
    cursor: FetchCursor
    gaps: List[FetchGap] = []
    reached_window_end: bool = False
    hit_record_cap: bool = False
