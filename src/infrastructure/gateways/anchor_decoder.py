import hashlib
import logging
import struct
from typing import Any, Dict, List, Optional, Tuple

import base58

from src.core.errors import AccountDecodeError, PayloadDecodeError
from src.core.interfaces.record_source import IPayloadDecoder

logger = logging.getLogger(__name__)

Layout = List[Tuple[str, str]]

_INCREASE_COMMON: Layout = [
    ("position_key", "pubkey"),
    ("position_side", "u8"),
    ("position_custody", "pubkey"),
    ("position_collateral_custody", "pubkey"),
    ("position_size_usd", "u64"),
    ("position_mint", "pubkey"),
]

_INCREASE_TAIL: Layout = [
    ("owner", "pubkey"),
    ("size_usd_delta", "u64"),
    ("collateral_usd_delta", "u64"),
    ("collateral_token_delta", "u64"),
    ("price", "u64"),
    ("price_slippage", "option<u64>"),
    ("fee_token", "u64"),
    ("fee_usd", "u64"),
    ("open_time", "i64"),
    ("referral", "option<pubkey>"),
    ("update_time", "i64"),
]

_REQUEST_FIELDS: Layout = [
    ("position_request_key", "pubkey"),
    ("position_request_mint", "pubkey"),
    ("request_type", "u8"),
]

_DECREASE_TAIL: Layout = [
    ("has_profit", "bool"),
    ("pnl_delta", "u64"),
    ("transfer_amount_usd", "u64"),
    ("transfer_token", "option<u64>"),
    ("owner", "pubkey"),
    ("size_usd_delta", "u64"),
    ("collateral_usd_delta", "u64"),
    ("price", "u64"),
    ("price_slippage", "option<u64>"),
    ("fee_usd", "u64"),
    ("open_time", "i64"),
    ("referral", "option<pubkey>"),
    ("update_time", "i64"),
]

_POOL_SWAP: Layout = [
    ("pool_key", "pubkey"),
    ("owner", "pubkey"),
    ("custody_in", "pubkey"),
    ("custody_out", "pubkey"),
    ("swap_usd_amount", "u64"),
    ("amount_in", "u64"),
    ("amount_out", "u64"),
    ("fee_bps", "u64"),
]

# Event name -> ordered little-endian field list (body only, no discriminator).
EVENT_LAYOUTS: Dict[str, Layout] = {
    "IncreasePositionEvent": _INCREASE_COMMON + _REQUEST_FIELDS + _INCREASE_TAIL,
    "InstantIncreasePositionEvent": _INCREASE_COMMON + _INCREASE_TAIL,
    "DecreasePositionEvent": _INCREASE_COMMON + _REQUEST_FIELDS + _DECREASE_TAIL,
    "InstantDecreasePositionEvent": _INCREASE_COMMON + _DECREASE_TAIL,
    "LiquidateFullPositionEvent": [
        ("position_key", "pubkey"),
        ("position_side", "u8"),
        ("position_custody", "pubkey"),
        ("position_collateral_custody", "pubkey"),
        ("position_size_usd", "u64"),
        ("has_profit", "bool"),
        ("pnl_delta", "u64"),
        ("transfer_amount_usd", "u64"),
        ("transfer_token", "u64"),
        ("owner", "pubkey"),
        ("price", "u64"),
        ("fee_usd", "u64"),
        ("liquidation_fee_usd", "u64"),
        ("open_time", "i64"),
        ("update_time", "i64"),
    ],
    "IncreasePositionPreSwapEvent": [
        ("position_request_key", "pubkey"),
        ("transfer_amount", "u64"),
        ("collateral_custody_pre_swap_amount", "u64"),
    ],
    "DecreasePositionPostSwapEvent": [
        ("position_request_key", "pubkey"),
        ("swap_amount", "u64"),
        ("minimum_out", "option<u64>"),
    ],
    "PoolSwapEvent": _POOL_SWAP,
    "PoolSwapExactOutEvent": _POOL_SWAP,
    "InstantCreateTpslEvent": [
        ("position_key", "pubkey"),
        ("owner", "pubkey"),
        ("position_request_key", "pubkey"),
        ("trigger_price", "u64"),
        ("entire_position", "bool"),
        ("size_usd_delta", "u64"),
        ("request_time", "i64"),
    ],
    "InstantUpdateTpslEvent": [
        ("position_key", "pubkey"),
        ("owner", "pubkey"),
        ("position_request_key", "pubkey"),
        ("trigger_price", "u64"),
        ("entire_position", "bool"),
        ("size_usd_delta", "u64"),
        ("request_time", "i64"),
    ],
    "InstantCreateLimitOrderEvent": [
        ("position_key", "pubkey"),
        ("owner", "pubkey"),
        ("position_request_key", "pubkey"),
        ("position_side", "u8"),
        ("limit_price", "u64"),
        ("size_usd_delta", "u64"),
        ("collateral_token_delta", "u64"),
        ("request_time", "i64"),
    ],
    "InstantUpdateLimitOrderEvent": [
        ("position_key", "pubkey"),
        ("owner", "pubkey"),
        ("position_request_key", "pubkey"),
        ("limit_price", "u64"),
        ("size_usd_delta", "u64"),
        ("request_time", "i64"),
    ],
    "FillLimitOrderEvent": [
        ("position_key", "pubkey"),
        ("owner", "pubkey"),
        ("position_request_key", "pubkey"),
        ("position_side", "u8"),
        ("price", "u64"),
        ("size_usd_delta", "u64"),
        ("collateral_usd_delta", "u64"),
        ("fee_usd", "u64"),
        ("position_size_usd", "u64"),
    ],
    "CreatePositionRequestEvent": [
        ("owner", "pubkey"),
        ("position_key", "pubkey"),
        ("position_request_key", "pubkey"),
        ("position_side", "u8"),
        ("request_change", "u8"),
        ("request_type", "u8"),
        ("size_usd_delta", "u64"),
        ("collateral_delta", "u64"),
        ("trigger_price", "option<u64>"),
    ],
    "ClosePositionRequestEvent": [
        ("owner", "pubkey"),
        ("position_key", "pubkey"),
        ("position_request_key", "pubkey"),
        ("amount", "u64"),
    ],
}

# Instruction params, keyed by snake_case instruction name. The events these
# instructions emit do not carry every argument; the TP/SL trigger direction
# in particular only exists here.
INSTRUCTION_LAYOUTS: Dict[str, Layout] = {
    "instant_create_tpsl": [
        ("collateral_usd_delta", "u64"),
        ("size_usd_delta", "u64"),
        ("trigger_price", "u64"),
        ("trigger_above_threshold", "bool"),
        ("entire_position", "bool"),
        ("counter", "u64"),
        ("request_time", "i64"),
    ],
    "instant_update_tpsl": [
        ("size_usd_delta", "u64"),
        ("trigger_price", "u64"),
        ("request_time", "i64"),
    ],
    "instant_create_limit_order": [
        ("limit_price", "u64"),
        ("size_usd_delta", "u64"),
    ],
    "instant_update_limit_order": [
        ("limit_price", "u64"),
        ("size_usd_delta", "u64"),
    ],
}

POSITION_ACCOUNT_LAYOUT: Layout = [
    ("owner", "pubkey"),
    ("pool", "pubkey"),
    ("custody", "pubkey"),
    ("collateral_custody", "pubkey"),
    ("open_time", "i64"),
    ("update_time", "i64"),
    ("side", "u8"),
    ("price", "u64"),
    ("size_usd", "u64"),
    ("collateral_usd", "u64"),
    ("realised_pnl_usd", "i64"),
    ("cumulative_interest_snapshot", "u128"),
    ("locked_amount", "u64"),
    ("bump", "u8"),
]

POSITION_ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:Position").digest()[:8]

_SCALARS = {
    "u8": struct.Struct("<B"),
    "bool": struct.Struct("<?"),
    "u64": struct.Struct("<Q"),
    "i64": struct.Struct("<q"),
}


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise ValueError(f"need {size} bytes at offset {self.offset}, have {len(self.data) - self.offset}")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def read(self, type_name: str) -> Any:
        if type_name.startswith("option<"):
            present = self.take(1)[0]
            if present == 0:
                return None
            if present != 1:
                raise ValueError(f"invalid option tag {present}")
            return self.read(type_name[len("option<"):-1])
        if type_name == "pubkey":
            return base58.b58encode(self.take(32)).decode()
        if type_name == "u128":
            return int.from_bytes(self.take(16), "little")
        scalar = _SCALARS.get(type_name)
        if scalar is None:
            raise ValueError(f"unsupported field type {type_name}")
        return scalar.unpack(self.take(scalar.size))[0]


def read_layout(layout: Layout, data: bytes) -> Dict[str, Any]:
    """Decode `data` field by field. Trailing bytes are ignored."""
    reader = _Reader(data)
    return {name: reader.read(type_name) for name, type_name in layout}


class AnchorLayoutDecoder(IPayloadDecoder):
    """Fixed-field Borsh decoder for the perpetuals program's events and accounts."""

    def __init__(
        self,
        layouts: Optional[Dict[str, Layout]] = None,
        instruction_layouts: Optional[Dict[str, Layout]] = None
    ):
        self.layouts = layouts if layouts is not None else EVENT_LAYOUTS
        self.instruction_layouts = instruction_layouts if instruction_layouts is not None else INSTRUCTION_LAYOUTS

    def decode(self, kind_name: str, body: bytes) -> Dict[str, Any]:
        layout = self.layouts.get(kind_name)
        if layout is None:
            raise PayloadDecodeError(f"no layout for {kind_name}", details={"event": kind_name})
        try:
            return read_layout(layout, body)
        except ValueError as e:
            raise PayloadDecodeError(f"{kind_name}: {e}", details={"event": kind_name, "size": len(body)})

    def decode_instruction(self, instruction_name: str, body: bytes) -> Dict[str, Any]:
        layout = self.instruction_layouts.get(instruction_name)
        if layout is None:
            raise PayloadDecodeError(f"no layout for {instruction_name}", details={"instruction": instruction_name})
        try:
            return read_layout(layout, body)
        except ValueError as e:
            raise PayloadDecodeError(
                f"{instruction_name}: {e}", details={"instruction": instruction_name, "size": len(body)}
            )

    def decode_position_account(self, data: bytes) -> Dict[str, Any]:
        if data[:8] != POSITION_ACCOUNT_DISCRIMINATOR:
            raise AccountDecodeError("not a Position account", details={"size": len(data)})
        try:
            return read_layout(POSITION_ACCOUNT_LAYOUT, data[8:])
        except ValueError as e:
            raise AccountDecodeError(f"Position account: {e}", details={"size": len(data)})
