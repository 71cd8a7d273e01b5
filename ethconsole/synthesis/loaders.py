"""
Verified-source ABI loaders and selector signature lookup.

Loaders return ``None`` when the contract is simply not verified, and raise
SynthesisError when the lookup itself failed. MultiAbiLoader tries each
loader in order; the first ABI found wins.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable, Optional, Sequence

import httpx

from ethconsole.common.types import AbiDescriptor, checksum
from ethconsole.synthesis.errors import SynthesisError

logger = logging.getLogger(__name__)


SOURCIFY_URL = "https://sourcify.dev/server"
ETHERSCAN_URL = "https://api.etherscan.io/v2/api"
OPENCHAIN_URL = "https://api.openchain.xyz/signature-database/v1/lookup"


class AbiLoader:
    name = "abi"

    async def load(self, address: str) -> Optional[AbiDescriptor]:
        raise NotImplementedError


async def _get_json(client: httpx.AsyncClient, url: str, **kwargs) -> Optional[object]:
    try:
        resp = await client.get(url, **kwargs)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPError as e:
        raise SynthesisError(f"GET {url} failed: {e}") from e
    except ValueError as e:
        raise SynthesisError(f"GET {url} returned invalid JSON: {e}") from e


class SourcifyAbiLoader(AbiLoader):
    name = "sourcify"

    def __init__(self, client: httpx.AsyncClient, chain_id: int, base_url: str = SOURCIFY_URL) -> None:
        self.client = client
        self.chain_id = chain_id
        self.base_url = base_url.rstrip("/")

    async def load(self, address: str) -> Optional[AbiDescriptor]:
        url = f"{self.base_url}/files/any/{self.chain_id}/{checksum(address)}"
        payload = await _get_json(self.client, url)
        if not isinstance(payload, dict):
            return None
        for entry in payload.get("files", []):
            if entry.get("name") != "metadata.json":
                continue
            try:
                metadata = json.loads(entry["content"])
                return AbiDescriptor.from_json(metadata["output"]["abi"])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise SynthesisError(f"Sourcify metadata for {address} is malformed: {e}") from e
        return None


class EtherscanAbiLoader(AbiLoader):
    name = "etherscan"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        chain_id: int,
        base_url: str = ETHERSCAN_URL,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.chain_id = chain_id
        self.base_url = base_url

    async def load(self, address: str) -> Optional[AbiDescriptor]:
        params = {
            "chainid": self.chain_id,
            "module": "contract",
            "action": "getabi",
            "address": address,
            "apikey": self.api_key,
        }
        payload = await _get_json(self.client, self.base_url, params=params)
        if not isinstance(payload, dict) or str(payload.get("status")) != "1":
            return None
        try:
            return AbiDescriptor.from_json(json.loads(payload["result"]))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SynthesisError(f"Etherscan ABI for {address} is malformed: {e}") from e


class MultiAbiLoader(AbiLoader):
    name = "multi"

    def __init__(self, loaders: Sequence[AbiLoader]) -> None:
        self.loaders = list(loaders)

    async def load(self, address: str) -> Optional[AbiDescriptor]:
        for loader in self.loaders:
            try:
                abi = await loader.load(address)
            except SynthesisError as e:
                logger.debug("%s lookup failed for %s: %s", loader.name, address, e)
                continue
            if abi:
                logger.debug("ABI for %s loaded from %s", address, loader.name)
                return abi
        return None


class SignatureLookup:
    """Names selectors and event topics via the openchain signature database."""

    def __init__(self, client: httpx.AsyncClient, base_url: str = OPENCHAIN_URL) -> None:
        self.client = client
        self.base_url = base_url

    async def lookup(self, selectors: Iterable[str], topics: Iterable[str] = ()) -> dict[str, str]:
        selectors, topics = list(selectors), list(topics)
        if not selectors and not topics:
            return {}
        params = {"filter": "true"}
        if selectors:
            params["function"] = ",".join(selectors)
        if topics:
            params["event"] = ",".join(topics)
        payload = await _get_json(self.client, self.base_url, params=params)
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise SynthesisError("Signature lookup returned no result")

        found: dict[str, str] = {}
        try:
            result = payload.get("result") or {}
            for section in ("function", "event"):
                for key, matches in (result.get(section) or {}).items():
                    if matches:
                        found[key.lower()] = str(matches[0]["name"])
        except (AttributeError, KeyError, TypeError) as e:
            raise SynthesisError(f"Signature lookup returned a malformed entry: {e!r}") from e
        return found
