from decimal import Decimal

from pydantic import BaseModel

from src.config import USD_DECIMALS


def format_atomic(raw: int, decimals: int = USD_DECIMALS) -> str:
    """Render a fixed-point integer as a plain decimal string ("-12.500000")."""
    quantum = Decimal(1).scaleb(-decimals)
    return str((Decimal(raw) * quantum).quantize(quantum))


class UsdValue(BaseModel):
    """
    A monetary amount in atomic USD units (10^-6 dollars) together with its
    display form. Arithmetic always uses `raw`.
    """
    raw: int
    formatted: str

    @classmethod
    def from_atomic(cls, raw: int) -> "UsdValue":
        return cls(raw=raw, formatted=format_atomic(raw))
