import base64
import json

import base58
import httpx
import pytest

from src.config import PERPETUALS_PROGRAM_ID
from src.core.errors import Fatal, NotFound, Ok, Retryable
from src.infrastructure.gateways.solana_rpc import EVENT_IX_TAG, SolanaRpcGateway
from factories import OWNER, T0, encode_event, increase_fields

OTHER_PROGRAM = "11111111111111111111111111111111"


def gateway_for(handler) -> SolanaRpcGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaRpcGateway(rpc_url="http://rpc.test", client=client)


def rpc_result(result):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return handler


@pytest.mark.asyncio
async def test_list_records_maps_signature_page():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": [
            {"signature": "a", "blockTime": T0, "slot": 10, "err": None},
            {"signature": "b", "blockTime": None, "slot": 9, "err": {"InstructionError": [0, "Custom"]}},
        ]})

    gateway = gateway_for(handler)
    result = await gateway.list_records("addr", 100, before="z")

    assert seen["method"] == "getSignaturesForAddress"
    assert seen["params"] == ["addr", {"limit": 100, "before": "z"}]
    assert isinstance(result, Ok)
    first, second = result.value
    assert (first.signature, first.block_time, first.failed) == ("a", T0, False)
    assert (second.block_time, second.failed) == (None, True)


@pytest.mark.asyncio
async def test_http_429_is_retryable():
    gateway = gateway_for(lambda request: httpx.Response(429, text="Too Many Requests"))

    assert isinstance(await gateway.list_records("addr", 10), Retryable)


@pytest.mark.asyncio
async def test_rpc_rate_limit_code_is_retryable():
    gateway = gateway_for(lambda request: httpx.Response(200, json={
        "jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"},
    }))

    assert isinstance(await gateway.get_record("sig"), Retryable)


@pytest.mark.asyncio
async def test_other_failures_are_fatal():
    server_error = gateway_for(lambda request: httpx.Response(500))
    rpc_error = gateway_for(lambda request: httpx.Response(200, json={
        "jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid param"},
    }))

    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    unreachable = gateway_for(refuse)

    assert isinstance(await server_error.list_records("addr", 10), Fatal)
    assert isinstance(await rpc_error.list_records("addr", 10), Fatal)
    assert isinstance(await unreachable.list_records("addr", 10), Fatal)


@pytest.mark.asyncio
async def test_null_transaction_is_not_found():
    gateway = gateway_for(rpc_result(None))

    assert isinstance(await gateway.get_record("sig"), NotFound)


@pytest.mark.asyncio
async def test_get_record_collects_program_instructions():
    event = encode_event("IncreasePositionEvent", increase_fields())
    outer_data = b"\x01" * 8 + b"args"
    tx = {
        "slot": 123,
        "blockTime": T0,
        "meta": {
            "err": None,
            "fee": 5000,
            "innerInstructions": [{
                "index": 0,
                "instructions": [
                    {"programIdIndex": 1, "data": base58.b58encode(EVENT_IX_TAG + event).decode(), "accounts": []},
                    {"programIdIndex": 2, "data": base58.b58encode(b"ignored").decode(), "accounts": []},
                ],
            }],
            "loadedAddresses": {"writable": [], "readonly": []},
        },
        "transaction": {
            "message": {
                "accountKeys": [OWNER, PERPETUALS_PROGRAM_ID, OTHER_PROGRAM],
                "instructions": [
                    {"programIdIndex": 1, "data": base58.b58encode(outer_data).decode(), "accounts": [0]},
                ],
            },
        },
    }
    gateway = gateway_for(rpc_result(tx))

    result = await gateway.get_record("sig")

    assert isinstance(result, Ok)
    rec = result.value
    assert (rec.block_time, rec.slot, rec.fee_lamports, rec.failed) == (T0, 123, 5000, False)
    assert [(s.index, s.inner) for s in rec.sub_events] == [(0, False), (1, True)]
    assert rec.sub_events[0].data == outer_data
    # the CPI tag is stripped so the event discriminator comes first
    assert rec.sub_events[1].data == event


@pytest.mark.asyncio
async def test_get_account_state_decodes_base64():
    gateway = gateway_for(rpc_result({
        "context": {"slot": 1},
        "value": {"data": [base64.b64encode(b"state").decode(), "base64"], "owner": PERPETUALS_PROGRAM_ID},
    }))

    result = await gateway.get_account_state("addr")

    assert result.value == b"state"


@pytest.mark.asyncio
async def test_missing_account_is_not_found():
    gateway = gateway_for(rpc_result({"context": {"slot": 1}, "value": None}))

    assert isinstance(await gateway.get_account_state("addr"), NotFound)
