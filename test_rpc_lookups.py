import base64
import json
import struct

import pytest
import requests
from solders.pubkey import Pubkey

from retry_policy import TransportError
from rpc_lookups import (
    METADATA_CREATOR_ADDRESS_0_OFFSET,
    METADATA_PROGRAM,
    MetadataDecodeError,
    SolanaLookups,
    decode_metadata,
)

UPDATE_AUTHORITY = bytes(range(32))
CREATOR = bytes(range(100, 132))


def mint_bytes(n):
    return bytes([n]) * 32


def padded(value, size):
    raw = value.encode().ljust(size, b"\x00")
    return struct.pack("<I", len(raw)) + raw


def metadata_account(mint, name="Degen #1", symbol="DGN", uri="https://arweave.net/x"):
    """token metadata v1 account laid out the way the metadata program pads it"""
    data = bytes([4]) + UPDATE_AUTHORITY + mint
    data += padded(name, 32) + padded(symbol, 10) + padded(uri, 200)
    data += struct.pack("<H", 500)
    # Some(creators), one verified creator with 100 share
    data += b"\x01" + struct.pack("<I", 1) + CREATOR + b"\x01" + bytes([100])
    data += b"\x01\x00"  # primary sale happened, is mutable
    return data


class FakeResponse:
    def __init__(self, body, status_code=200):
        self.status_code = status_code
        self.text = body if isinstance(body, str) else json.dumps(body)


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


def rpc_result(result):
    return FakeResponse({"jsonrpc": "2.0", "id": 1, "result": result})


def test_creator_sits_at_the_filter_offset():
    data = metadata_account(mint_bytes(1))
    offset = METADATA_CREATOR_ADDRESS_0_OFFSET
    assert data[offset:offset + 32] == CREATOR


def test_decode_metadata_reads_mint_and_strings():
    header = decode_metadata(metadata_account(mint_bytes(7)))
    assert header.mint == str(Pubkey.from_bytes(mint_bytes(7)))
    assert header.update_authority == str(Pubkey.from_bytes(UPDATE_AUTHORITY))
    assert header.name == "Degen #1"
    assert header.symbol == "DGN"
    assert header.uri == "https://arweave.net/x"
    assert header.seller_fee_basis_points == 500


@pytest.mark.parametrize("data", [
    b"",
    b"\x04" + b"\x00" * 40,
    bytes([6]) + metadata_account(mint_bytes(1))[1:],
    metadata_account(mint_bytes(1))[:100],
])
def test_decode_metadata_rejects_bad_payloads(data):
    with pytest.raises(MetadataDecodeError):
        decode_metadata(data)


def test_list_mints_for_creator_sends_memcmp_filter():
    creator = str(Pubkey.from_bytes(CREATOR))
    accounts = [
        {"pubkey": f"meta{n}", "account": {"data": [base64.b64encode(metadata_account(mint_bytes(n))).decode(), "base64"]}}
        for n in (1, 2, 3)
    ]
    session = FakeSession(rpc_result(accounts))
    lookups = SolanaLookups("http://rpc.test", session=session, bulk_timeout=300)

    mints = lookups.list_mints_for_creator(creator)

    assert mints == [str(Pubkey.from_bytes(mint_bytes(n))) for n in (1, 2, 3)]
    call = session.calls[0]
    assert call["url"] == "http://rpc.test"
    assert call["timeout"] == 300
    assert call["json"]["method"] == "getProgramAccounts"
    program, config = call["json"]["params"]
    assert program == METADATA_PROGRAM
    assert config["commitment"] == "finalized"
    assert config["encoding"] == "base64"
    assert config["filters"] == [{"memcmp": {"offset": 326, "bytes": creator}}]


def test_list_mints_aborts_on_first_undecodable_account():
    good = base64.b64encode(metadata_account(mint_bytes(1))).decode()
    bad = base64.b64encode(b"\x04junk").decode()
    accounts = [
        {"pubkey": "good", "account": {"data": [good, "base64"]}},
        {"pubkey": "bad", "account": {"data": [bad, "base64"]}},
    ]
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result(accounts)))

    with pytest.raises(MetadataDecodeError, match="bad"):
        lookups.list_mints_for_creator("creator")


def test_list_mints_empty_collection():
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result([])))
    assert lookups.list_mints_for_creator("creator") == []


@pytest.mark.parametrize("response", [
    requests.ConnectionError("refused"),
    requests.Timeout("slow"),
    FakeResponse("busy", status_code=429),
    FakeResponse("<html>gateway</html>"),
    FakeResponse({"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "node behind"}}),
])
def test_transport_failures_raise_transport_error(response):
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(response))
    with pytest.raises(TransportError):
        lookups.get_holder_account("mint")


def test_holder_account_picks_whole_supply_holder():
    result = {"context": {"slot": 1}, "value": [
        {"address": "dust", "amount": "0", "decimals": 0, "uiAmount": 0.0, "uiAmountString": "0"},
        {"address": "holder", "amount": "1", "decimals": 0, "uiAmount": 1.0, "uiAmountString": "1"},
    ]}
    session = FakeSession(rpc_result(result))
    lookups = SolanaLookups("http://rpc.test", session=session)

    assert lookups.get_holder_account("mint1") == "holder"
    assert session.calls[0]["json"]["method"] == "getTokenLargestAccounts"
    assert session.calls[0]["json"]["params"] == ["mint1"]


def test_holder_account_none_without_sole_holder():
    result = {"context": {"slot": 1}, "value": [
        {"address": "a", "amount": "5", "decimals": 1, "uiAmount": 0.5, "uiAmountString": "0.5"},
    ]}
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result(result)))
    assert lookups.get_holder_account("mint1") is None


def test_holder_account_none_on_unparseable_result():
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result({"unexpected": True})))
    assert lookups.get_holder_account("mint1") is None


def test_account_owner_reads_parsed_owner():
    value = {"data": {"parsed": {"info": {"owner": "wallet", "mint": "m"}, "type": "account"},
                      "program": "spl-token"}}
    session = FakeSession(rpc_result({"context": {"slot": 1}, "value": value}))
    lookups = SolanaLookups("http://rpc.test", session=session)

    assert lookups.get_account_owner("tokacc") == "wallet"
    call = session.calls[0]["json"]
    assert call["method"] == "getAccountInfo"
    assert call["params"] == ["tokacc", {"encoding": "jsonParsed", "commitment": "finalized"}]


def test_account_owner_none_when_account_missing():
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result({"context": {"slot": 1}, "value": None})))
    assert lookups.get_account_owner("closed") is None


def test_account_owner_none_when_not_parsed():
    value = {"data": ["AAAA", "base64"]}
    lookups = SolanaLookups("http://rpc.test", session=FakeSession(rpc_result({"context": {"slot": 1}, "value": value})))
    assert lookups.get_account_owner("tokacc") is None
