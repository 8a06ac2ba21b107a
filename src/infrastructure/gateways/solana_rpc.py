import base64
import hashlib
import logging
from typing import Any, Dict, List, Optional

import base58
import httpx

from src.config import PERPETUALS_PROGRAM_ID, RPC_TIMEOUT_SECONDS, SOLANA_RPC_URL
from src.core.entities.record import RawRecord, RecordHeader, SubEvent
from src.core.errors import Fatal, FetchResult, NotFound, Ok, Retryable
from src.core.interfaces.record_source import IRecordSource

logger = logging.getLogger(__name__)

# Anchor emits events through a self-CPI whose data starts with this tag.
EVENT_IX_TAG = hashlib.sha256(b"anchor:event").digest()[:8]

RATE_LIMIT_RPC_CODES = {-32005, 429}


class SolanaRpcGateway(IRecordSource):
    """
    IRecordSource over Solana JSON-RPC. Never raises for network conditions:
    rate limits become Retryable, null results NotFound, anything else Fatal.
    """

    def __init__(
        self,
        rpc_url: str = SOLANA_RPC_URL,
        program_id: str = PERPETUALS_PROGRAM_ID,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self._client = client or httpx.AsyncClient(timeout=RPC_TIMEOUT_SECONDS)
        self._request_id = 0
        logger.info(f"SolanaRpcGateway initialized. URL: {rpc_url}")

    async def close(self):
        await self._client.aclose()

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _rpc_call(self, method: str, params: List[Any]) -> FetchResult:
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": method,
            "params": params,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            return Fatal(reason=f"{method}: network error: {e}")

        if response.status_code == 429:
            return Retryable(reason=f"{method}: HTTP 429")
        if response.status_code != 200:
            return Fatal(reason=f"{method}: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            return Fatal(reason=f"{method}: invalid JSON: {e}")

        error = data.get("error")
        if error:
            message = error.get("message", "Unknown")
            if error.get("code") in RATE_LIMIT_RPC_CODES or "Too Many Requests" in message:
                return Retryable(reason=f"{method}: {message}")
            return Fatal(reason=f"{method}: RPC error {error.get('code')}: {message}")

        result = data.get("result")
        if result is None:
            return NotFound(reason=f"{method}: null result")
        return Ok(value=result)

    async def list_records(self, address: str, limit: int, before: Optional[str] = None) -> FetchResult:
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before

        result = await self._rpc_call("getSignaturesForAddress", [address, options])
        if not isinstance(result, Ok):
            return result

        headers = [
            RecordHeader(
                signature=entry["signature"],
                block_time=entry.get("blockTime"),
                slot=entry.get("slot", 0),
                failed=entry.get("err") is not None,
            )
            for entry in result.value
        ]
        return Ok(value=headers)

    async def get_record(self, signature: str) -> FetchResult:
        params = [
            signature,
            {"encoding": "json", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"},
        ]
        result = await self._rpc_call("getTransaction", params)
        if not isinstance(result, Ok):
            return result

        try:
            return Ok(value=self._to_record(signature, result.value))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            return Fatal(reason=f"getTransaction: malformed transaction {signature}: {e}")

    async def get_account_state(self, address: str) -> FetchResult:
        result = await self._rpc_call("getAccountInfo", [address, {"encoding": "base64"}])
        if not isinstance(result, Ok):
            return result

        account = result.value.get("value")
        if account is None:
            return NotFound(reason=f"account {address} does not exist")
        return Ok(value=base64.b64decode(account["data"][0]))

    def _to_record(self, signature: str, tx: Dict[str, Any]) -> RawRecord:
        meta = tx.get("meta") or {}
        message = tx["transaction"]["message"]

        # v0 transactions append lookup-table addresses after the static keys.
        account_keys = list(message["accountKeys"])
        loaded = meta.get("loadedAddresses") or {}
        account_keys += loaded.get("writable", []) + loaded.get("readonly", [])

        sub_events: List[SubEvent] = []

        def collect(instruction: Dict[str, Any], inner: bool):
            if account_keys[instruction["programIdIndex"]] != self.program_id:
                return
            data = base58.b58decode(instruction["data"])
            if data[:8] == EVENT_IX_TAG:
                data = data[8:]
            sub_events.append(SubEvent(index=len(sub_events), data=data, inner=inner))

        for instruction in message["instructions"]:
            collect(instruction, inner=False)
        for group in meta.get("innerInstructions") or []:
            for instruction in group["instructions"]:
                collect(instruction, inner=True)

        return RawRecord(
            signature=signature,
            block_time=tx.get("blockTime"),
            slot=tx.get("slot", 0),
            fee_lamports=meta.get("fee", 0),
            failed=meta.get("err") is not None,
            sub_events=sub_events,
        )
