import asyncio
import logging
import random
from typing import Callable, List, Optional, Sequence, Tuple

from src.config import IngestionSettings
from src.core.entities.record import (
    FetchCursor,
    FetchGap,
    IdentifierFailure,
    IngestionReport,
    RawRecord,
    RecordHeader,
)
from src.core.errors import (
    Fatal,
    NotFound,
    Ok,
    Retryable,
    UnrecoverableIOError,
    WindowValidationError,
)
from src.core.interfaces.record_source import IRecordSource
from src.core.use_cases.retry import Sleep, retry_with_backoff

logger = logging.getLogger(__name__)


def validate_window(window_start: int, window_end: int) -> None:
    """window_start is the newer bound, window_end the older one."""
    if window_end >= window_start:
        raise WindowValidationError(
            "window end must be older than window start",
            details={"window_start": window_start, "window_end": window_end},
        )


class EventIngestor:
    """
    Pages backward through an identifier's record history, newest first,
    and fetches every successful record inside [window_end, window_start].
    One request is outstanding at a time; pauses between requests are
    mandatory.
    """

    def __init__(
        self,
        source: IRecordSource,
        settings: Optional[IngestionSettings] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random
    ):
        self.source = source
        self.settings = settings or IngestionSettings()
        self._sleep = sleep
        self._rng = rng

    async def fetch_all(
        self,
        identifiers: Sequence[str],
        window_start: int,
        window_end: int
    ) -> Tuple[List[IngestionReport], List[IdentifierFailure]]:
        validate_window(window_start, window_end)

        reports: List[IngestionReport] = []
        failures: List[IdentifierFailure] = []
        for i, identifier in enumerate(identifiers):
            if i > 0:
                logger.info(f"Waiting {self.settings.identifier_delay}s before next identifier")
                await self._sleep(self.settings.identifier_delay)
            try:
                reports.append(await self.fetch_identifier(identifier, window_start, window_end))
            except UnrecoverableIOError as e:
                logger.error(f"Aborting {identifier}: {e.message}")
                failures.append(IdentifierFailure(identifier=identifier, reason=e.message))
        return reports, failures

    async def fetch_identifier(self, identifier: str, window_start: int, window_end: int) -> IngestionReport:
        validate_window(window_start, window_end)
        cursor = FetchCursor(window_start=window_start, window_end=window_end)
        report = IngestionReport(identifier=identifier, cursor=cursor)

        headers = await self._collect_headers(identifier, cursor, report)
        logger.info(f"{identifier}: {len(headers)} records in window ({cursor.total_fetched} scanned)")

        report.records = await self._fetch_records(identifier, headers, report)
        return report

    async def _collect_headers(
        self,
        identifier: str,
        cursor: FetchCursor,
        report: IngestionReport
    ) -> List[RecordHeader]:
        cap = self.settings.max_records_per_identifier
        retained: List[RecordHeader] = []
        pages = 0

        while cursor.total_fetched < cap:
            limit = min(self.settings.page_size, cap - cursor.total_fetched)
            if pages > 0:
                await self._sleep(self.settings.page_delay)

            before = cursor.before_signature
            result = await retry_with_backoff(
                lambda: self.source.list_records(identifier, limit, before),
                self.settings.page_backoff,
                sleep=self._sleep,
                rng=self._rng,
                label=f"list_records({identifier})",
            )
            pages += 1

            if isinstance(result, Fatal):
                raise UnrecoverableIOError(result.reason, identifier=identifier)
            if isinstance(result, Retryable):
                report.gaps.append(FetchGap(
                    identifier=identifier,
                    scope="page",
                    reason=f"retries exhausted: {result.reason}",
                    signature=before,
                ))
                break
            if isinstance(result, NotFound):
                break

            page: List[RecordHeader] = result.value
            if not page:
                logger.info(f"{identifier}: no more records")
                break
            cursor.total_fetched += len(page)

            for header in page:
                if header.block_time is None:
                    # Window membership is unknown; skip it but keep paging.
                    logger.debug(f"{identifier}: {header.signature} has no block time")
                    continue
                if header.block_time < cursor.window_end:
                    report.reached_window_end = True
                    break
                if header.block_time <= cursor.window_start:
                    retained.append(header)

            if report.reached_window_end:
                logger.info(f"{identifier}: reached window end, stopping")
                break
            if len(page) < limit:
                break
            cursor.before_signature = page[-1].signature

        report.hit_record_cap = cursor.total_fetched >= cap
        if report.hit_record_cap:
            logger.warning(f"{identifier}: record cap of {cap} reached, older history not scanned")
        return retained

    async def _fetch_records(
        self,
        identifier: str,
        headers: List[RecordHeader],
        report: IngestionReport
    ) -> List[RawRecord]:
        records: List[RawRecord] = []
        requested = 0

        for header in headers:
            if header.failed:
                logger.info(f"Skipping failed record {header.signature}")
                continue
            if requested > 0:
                await self._sleep(self.settings.record_delay)
            requested += 1

            result = await retry_with_backoff(
                lambda: self.source.get_record(header.signature),
                self.settings.record_backoff,
                sleep=self._sleep,
                rng=self._rng,
                label=f"get_record({header.signature})",
            )

            if isinstance(result, Fatal):
                raise UnrecoverableIOError(result.reason, identifier=identifier)
            if not isinstance(result, Ok):
                reason = "record not found" if isinstance(result, NotFound) else f"retries exhausted: {result.reason}"
                logger.warning(f"{identifier}: gap at {header.signature} ({reason})")
                report.gaps.append(FetchGap(
                    identifier=identifier,
                    scope="record",
                    reason=reason,
                    signature=header.signature,
                ))
                continue

            record: RawRecord = result.value
            if record.failed:
                continue
            if record.block_time is None:
                record = record.model_copy(update={"block_time": header.block_time})
            records.append(record)

        return records
