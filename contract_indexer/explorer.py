# explorer.py
"""
Etherscan-compatible explorer client.

Failures are classified so callers can decide about retries:
`NotFound` for unverified contracts, malformed addresses and contracts with
no transactions, `TransientError` for rate limiting, 5xx responses, timeouts
and connection errors. Nothing is retried here.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from . import config
from .errors import MetadataFetchError, NotFound, TransientError
from .helpers import hex_to_int

logger = logging.getLogger(__name__)

UNVERIFIED_ABI = "Contract source code not verified"


@dataclass(frozen=True)
class ContractMetadata:
    address: str
    name: str
    abi: Optional[List[Dict[str, Any]]]
    source_code: str
    starting_block: Optional[int] = None


class EtherscanClient:
    def __init__(self, api_key: str, base_url: str = None, chain_id: Optional[str] = None,
                 timeout: float = None, session: aiohttp.ClientSession = None):
        self.api_key = api_key
        self.base_url = base_url or config.ETHERSCAN_URL
        self.chain_id = chain_id if chain_id is not None else config.ETHERSCAN_CHAIN_ID
        self.timeout = aiohttp.ClientTimeout(total=timeout or config.EXPLORER_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, *exc):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None:
            raise RuntimeError("EtherscanClient used outside `async with`")
        query = dict(params, apikey=self.api_key)
        if self.chain_id:
            query["chainid"] = self.chain_id
        try:
            async with self._session.get(self.base_url, params=query) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientError(f"explorer HTTP {resp.status}")
                if resp.status == 404:
                    raise NotFound("explorer HTTP 404")
                if resp.status != 200:
                    raise MetadataFetchError(f"explorer HTTP {resp.status}")
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"explorer unreachable: {e!r}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise TransientError("explorer returned non-JSON body") from None

        if str(data.get("status")) == "0":
            result = str(data.get("result") or data.get("message") or "")
            low = result.lower()
            if "rate limit" in low:
                raise TransientError(result)
            if "api key" in low:
                raise MetadataFetchError(result)
            if "invalid address" in low:
                raise NotFound(result)
        return data

    async def get_source(self, address: str) -> Dict[str, Any]:
        data = await self._get({"module": "contract", "action": "getsourcecode", "address": address})
        result = data.get("result")
        if not isinstance(result, list) or not result or not result[0]:
            raise NotFound(f"no contract data for {address}")
        entry = result[0]
        if not entry.get("SourceCode"):
            raise NotFound(f"source code not verified for {address}")

        abi = None
        raw_abi = entry.get("ABI")
        if raw_abi and raw_abi != UNVERIFIED_ABI:
            try:
                abi = json.loads(raw_abi) if isinstance(raw_abi, str) else raw_abi
            except json.JSONDecodeError:
                logger.warning("[explorer] unparseable ABI for %s, continuing without it", address)
        return {"name": entry.get("ContractName") or "", "abi": abi, "source_code": entry["SourceCode"]}

    async def get_starting_block(self, address: str) -> int:
        """Block of the first transaction touching the address."""
        data = await self._get({
            "module": "account", "action": "txlist", "address": address,
            "page": 1, "offset": 3, "sort": "asc",
        })
        result = data.get("result")
        if not isinstance(result, list) or not result:
            raise NotFound(f"no transactions for {address}")
        block = result[0].get("blockNumber")
        if block in (None, ""):
            raise NotFound(f"first transaction of {address} has no block number")
        return hex_to_int(block)

    async def fetch_contract(self, address: str) -> ContractMetadata:
        src = await self.get_source(address)
        starting_block = await self.get_starting_block(address)
        logger.debug("[explorer] %s -> %s (from block %s)", address, src["name"], starting_block)
        return ContractMetadata(
            address=address,
            name=src["name"],
            abi=src["abi"],
            source_code=src["source_code"],
            starting_block=starting_block,
        )
