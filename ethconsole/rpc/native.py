"""
Native request executor.

The executor owns the privileged upstream connection. ethconsole only
invokes its two commands: ``start`` and ``request``. HttpNativeExecutor is a
stand-in that relays envelopes to an HTTP JSON-RPC endpoint.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ethconsole.common.types import RequestEnvelope
from ethconsole.rpc.bridge import TransportError

logger = logging.getLogger(__name__)


class NativeExecutorError(TransportError):
    """The executor could not start or could not relay a request."""


class NativeExecutor(ABC):
    @abstractmethod
    async def start(self, rpc_url: str, consensus_rpc: str, chain_id: int) -> str:
        """Start the upstream connection. Returns a status message."""

    @abstractmethod
    async def request(self, envelope: RequestEnvelope) -> dict:
        """Execute one envelope and return the raw JSON-RPC response object."""


class HttpNativeExecutor(NativeExecutor):
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._rpc_url: Optional[str] = None
        self._starting = False
        self.consensus_rpc: Optional[str] = None
        self.chain_id: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._rpc_url is not None

    async def start(self, rpc_url: str, consensus_rpc: str, chain_id: int) -> str:
        if self._rpc_url is not None or self._starting:
            raise NativeExecutorError("Light client is already running")

        self._starting = True
        try:
            probe = RequestEnvelope(method="eth_chainId")
            try:
                response = await self._post(rpc_url, probe)
            except NativeExecutorError as e:
                raise NativeExecutorError(f"Failed to start client: {e}") from e

            if response.get("error") is not None:
                raise NativeExecutorError(f"Failed to start client: {response['error']}")
            try:
                remote_chain_id = int(response.get("result"), 16)
            except (TypeError, ValueError) as e:
                raise NativeExecutorError(f"Failed to start client: bad chain id {response!r}") from e
            if remote_chain_id != chain_id:
                raise NativeExecutorError(
                    f"Failed to sync client: chain id mismatch "
                    f"(expected {chain_id}, got {remote_chain_id})"
                )

            self._rpc_url = rpc_url
            self.consensus_rpc = consensus_rpc
            self.chain_id = chain_id
        finally:
            self._starting = False

        logger.info("Upstream connection ready (chain %d)", chain_id)
        return "Light client started and synced successfully"

    async def request(self, envelope: RequestEnvelope) -> dict:
        if self._rpc_url is None:
            raise NativeExecutorError("Light client is not running")
        return await self._post(self._rpc_url, envelope)

    async def _post(self, url: str, envelope: RequestEnvelope) -> dict:
        try:
            resp = await self._client.post(url, json=envelope.to_dict())
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise NativeExecutorError(f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise NativeExecutorError(f"Invalid JSON from upstream: {e}") from e
        if not isinstance(payload, dict):
            raise NativeExecutorError(f"Unexpected upstream payload: {payload!r}")
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()
