from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from src.core.errors import FetchResult


class IRecordSource(ABC):
    """
    Chain record source. Every call returns a FetchResult variant instead of
    raising: Ok(value), Retryable (rate limited), NotFound or Fatal(reason).
    """

    @abstractmethod
    async def list_records(
        self,
        address: str,
        limit: int,
        before: Optional[str] = None
    ) -> FetchResult:
        """Ok(List[RecordHeader]), newest first."""
        pass

    @abstractmethod
    async def get_record(self, signature: str) -> FetchResult:
        """Ok(RawRecord) or NotFound."""
        pass

    @abstractmethod
    async def get_account_state(self, address: str) -> FetchResult:
        """Ok(bytes) or NotFound."""
        pass


class IPayloadDecoder(ABC):
    @abstractmethod
    def decode(self, kind_name: str, body: bytes) -> Dict[str, Any]:
        """Decode a sub-event body. Raises PayloadDecodeError."""
        pass

    @abstractmethod
    def decode_instruction(self, instruction_name: str, body: bytes) -> Dict[str, Any]:
        """Decode instruction params (data after the 8-byte discriminator). Raises PayloadDecodeError."""
        pass

    @abstractmethod
    def decode_position_account(self, data: bytes) -> Dict[str, Any]:
        """Decode position account state. Raises AccountDecodeError."""
        pass
