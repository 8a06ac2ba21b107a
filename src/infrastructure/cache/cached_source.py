import asyncio
import logging
from typing import Optional

from src.core.entities.record import RawRecord
from src.core.errors import FetchResult, Ok
from src.core.interfaces.record_source import IRecordSource
from src.infrastructure.cache.redis_service import RedisService

logger = logging.getLogger(__name__)


class CachedRecordSource(IRecordSource):
    """
    Caches fetched records by signature. A confirmed record never changes,
    so entries have no TTL. Signature pages and account state move with the
    chain and always go to the wrapped source.
    """

    KEY_PREFIX = "tradetrace:record:"

    def __init__(self, source: IRecordSource, cache: RedisService):
        self.source = source
        self.cache = cache

    async def list_records(self, address: str, limit: int, before: Optional[str] = None) -> FetchResult:
        return await self.source.list_records(address, limit, before)

    async def get_record(self, signature: str) -> FetchResult:
        key = f"{self.KEY_PREFIX}{signature}"
        cached = await asyncio.to_thread(self.cache.get_model, key, RawRecord)
        if cached is not None:
            logger.debug(f"Cache hit for {signature}")
            return Ok(value=cached)

        result = await self.source.get_record(signature)
        if isinstance(result, Ok):
            await asyncio.to_thread(self.cache.set_model, key, result.value)
        return result

    async def get_account_state(self, address: str) -> FetchResult:
        return await self.source.get_account_state(address)
