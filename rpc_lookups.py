"""
Solana JSON-RPC lookups needed to map an NFT collection to its holders.

Three calls:
    list_mints_for_creator  - getProgramAccounts over token metadata, filtered on creator[0]
    get_holder_account      - getTokenLargestAccounts, the account holding the whole supply
    get_account_owner       - getAccountInfo (jsonParsed), the wallet owning a token account
"""

import base64
import logging
import struct
from dataclasses import dataclass
from typing import List, Optional

import requests
import ujson  # faster json
from solders.pubkey import Pubkey

from retry_policy import TransportError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
METADATA_PROGRAM = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
METADATA_CREATOR_ADDRESS_0_OFFSET = 326
METADATA_V1_KEY = 4

# scanning every metadata account for a creator is slow server side and
# grows with the number of metadata accounts on chain
BULK_QUERY_TIMEOUT = 300
LOOKUP_TIMEOUT = 30

FINALIZED = {"commitment": "finalized"}


class MetadataDecodeError(ValueError):
    """metadata account payload does not match the expected layout"""


@dataclass(frozen=True)
class MetadataHeader:
    update_authority: str
    mint: str
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int


def _read_string(data: bytes, offset: int):
    if offset + 4 > len(data):
        raise MetadataDecodeError(f"truncated string length at offset {offset}")
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if offset + length > len(data):
        raise MetadataDecodeError(f"string of {length} bytes overruns payload at offset {offset}")
    try:
        value = data[offset:offset + length].decode("utf-8").rstrip("\x00")
    except UnicodeDecodeError as e:
        raise MetadataDecodeError(f"invalid utf-8 at offset {offset}: {e}") from e
    return value, offset + length


def decode_metadata(data: bytes) -> MetadataHeader:
    """Decode the fixed-layout head of a token metadata account.

    Only the fields up to the seller fee are read; anything after that
    (creators, collection, uses...) is ignored.
    """
    if len(data) < 65:
        raise MetadataDecodeError(f"payload too short ({len(data)} bytes)")
    if data[0] != METADATA_V1_KEY:
        raise MetadataDecodeError(f"unexpected account key {data[0]}")

    offset = 1
    update_authority = str(Pubkey.from_bytes(data[offset:offset + 32]))
    offset += 32
    mint = str(Pubkey.from_bytes(data[offset:offset + 32]))
    offset += 32

    name, offset = _read_string(data, offset)
    symbol, offset = _read_string(data, offset)
    uri, offset = _read_string(data, offset)

    if offset + 2 > len(data):
        raise MetadataDecodeError("truncated seller fee")
    (seller_fee,) = struct.unpack_from("<H", data, offset)

    return MetadataHeader(update_authority, mint, name, symbol, uri, seller_fee)


class SolanaLookups:
    """blocking JSON-RPC client, safe to share between worker threads"""

    def __init__(self, rpc_url: str = DEFAULT_RPC_URL, session: Optional[requests.Session] = None,
                 timeout: float = LOOKUP_TIMEOUT, bulk_timeout: float = BULK_QUERY_TIMEOUT):
        self.rpc_url = rpc_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.bulk_timeout = bulk_timeout

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _call(self, method: str, params: list, timeout: Optional[float] = None):
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=timeout or self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"{method} request failed: {e}") from e

        if response.status_code != 200:
            raise TransportError(f"{method} returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = ujson.loads(response.text)
        except ValueError as e:
            raise TransportError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise TransportError(f"{method} returned unexpected body")
        if body.get("error"):
            raise TransportError(f"{method} RPC error: {body['error']}")
        return body.get("result")

    def list_mints_for_creator(self, creator: str) -> List[str]:
        """all mints whose metadata lists ``creator`` as the first creator"""
        config = {
            "encoding": "base64",
            **FINALIZED,
            "withContext": False,
            "filters": [
                {"memcmp": {"offset": METADATA_CREATOR_ADDRESS_0_OFFSET, "bytes": creator}},
            ],
        }
        logger.info(f"Scanning metadata accounts for creator {creator}")
        result = self._call("getProgramAccounts", [METADATA_PROGRAM, config], timeout=self.bulk_timeout)
        if not isinstance(result, list):
            raise TransportError("getProgramAccounts returned no account list")

        mints = []
        for account in result:
            try:
                pubkey = account["pubkey"]
                encoded = account["account"]["data"][0]
            except (KeyError, IndexError, TypeError) as e:
                raise MetadataDecodeError(f"malformed program account entry: {account!r}") from e
            try:
                raw = base64.b64decode(encoded, validate=True)
            except ValueError as e:
                raise MetadataDecodeError(f"metadata account {pubkey} is not valid base64") from e
            try:
                mints.append(decode_metadata(raw).mint)
            except MetadataDecodeError as e:
                raise MetadataDecodeError(f"metadata account {pubkey}: {e}") from e

        logger.info(f"Found {len(mints)} metadata accounts")
        return mints

    def get_holder_account(self, mint: str) -> Optional[str]:
        """token account holding the entire supply of ``mint``, if any"""
        result = self._call("getTokenLargestAccounts", [mint])
        try:
            holders = result["value"]
            for holder in holders:
                if holder.get("uiAmount") == 1.0:
                    return holder["address"]
        except (KeyError, TypeError, AttributeError):
            logger.debug(f"Unparseable getTokenLargestAccounts response for {mint[:8]}")
        return None

    def get_account_owner(self, account: str) -> Optional[str]:
        """wallet owning token account ``account`` at finalized commitment"""
        result = self._call("getAccountInfo", [account, {"encoding": "jsonParsed", **FINALIZED}])
        try:
            value = result["value"]
            if value is None:
                return None
            return value["data"]["parsed"]["info"]["owner"]
        except (KeyError, TypeError):
            logger.debug(f"Unparseable getAccountInfo response for {account[:8]}")
        return None
