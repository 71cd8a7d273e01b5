"""
Tests for surface generation and the surface cache.
"""

import json

import httpx
import pytest

from ethconsole.common.types import AbiDescriptor, ProxyHop, ResolvedInterface
from ethconsole.synthesis.errors import GenerationError
from ethconsole.synthesis.generation import (
    SurfaceCache,
    SurfaceGenerator,
    build_prompt,
    extract_markup,
)

from tests.fixtures.addresses import IMPLEMENTATION_ADDRESS, TOKEN_ADDRESS
from tests.fixtures.fakes import make_http
from tests.fixtures.keys import OPENAI_API_KEY

ABI = AbiDescriptor.from_json([
    {"type": "function", "name": "totalSupply", "inputs": [], "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view"},
])
RESOLVED = ResolvedInterface(address=TOKEN_ADDRESS, abi=ABI, name="Wrapped Ether", source="verified")


def completion(content):
    return lambda request: httpx.Response(200, json={
        "id": "chatcmpl-1",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
    })


class TestPrompt:
    def test_contains_address_name_and_abi(self):
        prompt = build_prompt(RESOLVED)
        assert TOKEN_ADDRESS in prompt
        assert "Wrapped Ether" in prompt
        assert '"totalSupply"' in prompt

    def test_mentions_proxies(self):
        resolved = ResolvedInterface(
            address=TOKEN_ADDRESS, abi=ABI,
            proxies=(ProxyHop(TOKEN_ADDRESS, "eip1967", IMPLEMENTATION_ADDRESS),),
        )
        assert "eip1967" in build_prompt(resolved)


class TestExtractMarkup:
    def test_fenced(self):
        assert extract_markup("Here you go:\n```html\n<p>hi</p>\n```\nEnjoy") == "<p>hi</p>"

    def test_plain(self):
        assert extract_markup("  <p>hi</p>\n") == "<p>hi</p>"


class TestSurfaceGenerator:
    @pytest.mark.asyncio
    async def test_generate(self):
        seen = []

        def handler(request):
            seen.append(request)
            return completion("```html\n<html><body>ok</body></html>\n```")(request)

        generator = SurfaceGenerator(lambda: OPENAI_API_KEY, make_http({"/v1/chat/completions": handler}))
        surface = await generator.generate(RESOLVED)
        assert surface.markup == "<html><body>ok</body></html>"
        assert surface.name == "Wrapped Ether"
        assert surface.address == TOKEN_ADDRESS

        body = json.loads(seen[0].content)
        assert body["model"] == "gpt-4o"
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert seen[0].headers["authorization"] == f"Bearer {OPENAI_API_KEY}"

    @pytest.mark.asyncio
    async def test_missing_key(self, offline_http):
        generator = SurfaceGenerator(lambda: "", offline_http)
        with pytest.raises(GenerationError, match="No generation API key"):
            await generator.generate(RESOLVED)

    @pytest.mark.asyncio
    async def test_http_error(self):
        http = make_http({"/v1/chat/completions": lambda r: httpx.Response(401, json={"error": "bad key"})})
        generator = SurfaceGenerator(lambda: OPENAI_API_KEY, http)
        with pytest.raises(GenerationError, match="401"):
            await generator.generate(RESOLVED)

    @pytest.mark.asyncio
    async def test_missing_content(self):
        http = make_http({"/v1/chat/completions": lambda r: httpx.Response(200, json={"choices": []})})
        generator = SurfaceGenerator(lambda: OPENAI_API_KEY, http)
        with pytest.raises(GenerationError, match="no message content"):
            await generator.generate(RESOLVED)

    @pytest.mark.asyncio
    async def test_null_content(self):
        http = make_http({"/v1/chat/completions": completion(None)})
        generator = SurfaceGenerator(lambda: OPENAI_API_KEY, http)
        with pytest.raises(GenerationError):
            await generator.generate(RESOLVED)

    @pytest.mark.asyncio
    async def test_custom_base_url_and_model(self):
        http = make_http({"/api/v1/chat/completions": completion("<p>x</p>")})
        generator = SurfaceGenerator(
            lambda: OPENAI_API_KEY, http, base_url="http://llm.local/api/v1/", model="local-model"
        )
        assert (await generator.generate(RESOLVED)).markup == "<p>x</p>"


class TestSurfaceCache:
    def test_disabled_by_default(self):
        cache = SurfaceCache()
        surface = object()
        cache.put(RESOLVED, surface)
        assert cache.get(RESOLVED) is None
        assert len(cache) == 0

    def test_keyed_by_address_and_abi(self):
        cache = SurfaceCache(enabled=True)
        surface = object()
        cache.put(RESOLVED, surface)
        assert cache.get(RESOLVED) is surface
        # same address, different ABI
        other = ResolvedInterface(address=TOKEN_ADDRESS, abi=AbiDescriptor.from_json([
            {"type": "function", "name": "decimals", "inputs": [], "outputs": []},
        ]))
        assert cache.get(other) is None
