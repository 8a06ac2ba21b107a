from typing import Dict, Iterable, List, Optional, Tuple

from src.core.entities.record import RawRecord, RecordHeader
from src.core.errors import FetchResult, NotFound, Ok
from src.core.interfaces.record_source import IRecordSource


class InMemoryRecordSource(IRecordSource):
    """
    Deterministic record source for tests and offline runs.

    Histories are served newest first. `script` queues canned results
    (e.g. Retryable) that are returned before the stored data for a call.
    """

    def __init__(self):
        self.histories: Dict[str, List[RecordHeader]] = {}
        self.records: Dict[str, RawRecord] = {}
        self.accounts: Dict[str, bytes] = {}
        self.scripted: Dict[Tuple[str, str], List[FetchResult]] = {}
        self.calls: List[Tuple[str, str]] = []

    def add_history(self, address: str, records: Iterable[RawRecord]):
        records = sorted(records, key=lambda r: (r.block_time or 0, r.slot), reverse=True)
        headers = self.histories.setdefault(address, [])
        for record in records:
            headers.append(RecordHeader(
                signature=record.signature,
                block_time=record.block_time,
                slot=record.slot,
                failed=record.failed,
            ))
            self.records[record.signature] = record

    def add_account(self, address: str, data: bytes):
        self.accounts[address] = data

    def script(self, method: str, key: str, *results: FetchResult):
        self.scripted.setdefault((method, key), []).extend(results)

    def _next_scripted(self, method: str, key: str) -> Optional[FetchResult]:
        self.calls.append((method, key))
        queue = self.scripted.get((method, key))
        if queue:
            return queue.pop(0)
        return None

    async def list_records(self, address: str, limit: int, before: Optional[str] = None) -> FetchResult:
        scripted = self._next_scripted("list_records", address)
        if scripted is not None:
            return scripted

        headers = self.histories.get(address, [])
        start = 0
        if before is not None:
            signatures = [h.signature for h in headers]
            start = signatures.index(before) + 1 if before in signatures else len(headers)
        return Ok(value=headers[start:start + limit])

    async def get_record(self, signature: str) -> FetchResult:
        scripted = self._next_scripted("get_record", signature)
        if scripted is not None:
            return scripted

        record = self.records.get(signature)
        if record is None:
            return NotFound(reason=f"record {signature} not found")
        return Ok(value=record)

    async def get_account_state(self, address: str) -> FetchResult:
        scripted = self._next_scripted("get_account_state", address)
        if scripted is not None:
            return scripted

        data = self.accounts.get(address)
        if data is None:
            return NotFound(reason=f"account {address} not found")
        return Ok(value=data)
