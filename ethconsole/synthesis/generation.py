"""
Interaction-surface generation through an OpenAI-compatible completion API.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Callable, Optional

import httpx

from ethconsole.common.types import GeneratedSurface, ResolvedInterface
from ethconsole.synthesis.errors import GenerationError

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You build single-file HTML interfaces for Ethereum smart contracts. "
    "Reply with one complete HTML document and nothing else. Use inline CSS and "
    "plain JavaScript only; no external scripts, stylesheets or fonts. The page "
    "talks to the chain exclusively through window.ethereum.request({method, params}), "
    "which returns a Promise of the JSON-RPC result. Encode calldata by hand from "
    "the ABI. Read-only functions use eth_call; state-changing functions use "
    "eth_sendTransaction with a from address obtained via eth_accounts or entered "
    "by the user. Show decoded results and errors inline."
)

_FENCE_RE = re.compile(r"```(?:html|HTML)?\s*\n(.*?)```", re.DOTALL)


def build_prompt(resolved: ResolvedInterface) -> str:
    lines = [
        f"Contract address: {resolved.address}",
        f"Contract name: {resolved.name}",
    ]
    if resolved.proxies:
        chain = " -> ".join(
            f"{hop.address} ({hop.kind})" for hop in resolved.proxies
        )
        lines.append(f"Proxy chain: {chain}")
    partial = [item for item in resolved.abi if item.is_partial]
    if partial:
        lines.append(
            f"{len(partial)} entries are known only by selector; expose them as raw "
            "calldata inputs."
        )
    lines.append("ABI:")
    lines.append(json.dumps(resolved.abi.to_json(), indent=2))
    return "\n".join(lines)


def extract_markup(content: str) -> str:
    """Unwrap a fenced code block if the model added one."""
    match = _FENCE_RE.search(content)
    if match:
        return match.group(1).strip()
    return content.strip()


class SurfaceGenerator:
    def __init__(
        self,
        api_key: Callable[[], str],
        client: httpx.AsyncClient,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
    ) -> None:
        self.api_key = api_key
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def generate(self, resolved: ResolvedInterface) -> GeneratedSurface:
        key = self.api_key()
        if not key:
            raise GenerationError("No generation API key configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(resolved)},
            ],
        }
        headers = {"Authorization": f"Bearer {key}"}
        try:
            resp = await self.client.post(
                f"{self.base_url}/chat/completions", json=body, headers=headers
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Generation request failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Generation response is not JSON: {e}") from e

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Generation response has no message content") from e
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("Generation response has no message content")

        logger.info("Generated surface for %s (%s)", resolved.address, resolved.name)
        return GeneratedSurface(
            address=resolved.address,
            name=resolved.name,
            markup=extract_markup(content),
        )


class SurfaceCache:
    """Generated surfaces keyed by (address, ABI hash). Off unless enabled."""

    def __init__(self, enabled: bool = False) -> None:
        self.enabled = enabled
        self._entries: dict[tuple[str, str], GeneratedSurface] = {}

    @staticmethod
    def key(resolved: ResolvedInterface) -> tuple[str, str]:
        return resolved.address, resolved.abi.abi_hash()

    def get(self, resolved: ResolvedInterface) -> Optional[GeneratedSurface]:
        if not self.enabled:
            return None
        return self._entries.get(self.key(resolved))

    def put(self, resolved: ResolvedInterface, surface: GeneratedSurface) -> None:
        if self.enabled:
            self._entries[self.key(resolved)] = surface

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
