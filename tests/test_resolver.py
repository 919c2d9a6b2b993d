import asyncio
import io
import json
import struct

import httpx
import numpy as np
import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from core.cache import MetadataCache, RecordStore
from core.errors import TransportError
from core.fetcher import FetchOrchestrator
from core.range_registry import RangeCapabilityRegistry
from core.resolver import MetadataResolver


PARAMS = "studio lighting, bust portrait\nSteps: 20, Seed: 3"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class CountingServer:
    """Serves fixed bodies, honouring ranges, and counts requests."""

    def __init__(self, files):
        self.files    = files
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        body = self.files.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        rng = request.headers.get("Range")
        if rng is None:
            return httpx.Response(200, content=body)
        end = min(int(rng.split("-")[1]), len(body) - 1)
        return httpx.Response(206, content=body[:end + 1],
                              headers={"Content-Range": f"bytes 0-{end}/{len(body)}"})


def png_with_params(text=PARAMS) -> bytes:
    info = PngInfo()
    info.add_text("parameters", text)
    buf = io.BytesIO()
    Image.fromarray(np.full((32, 32, 3), 80, dtype=np.uint8)).save(buf, format="PNG", pnginfo=info)
    return buf.getvalue()


def tensor_archive(metadata: dict) -> bytes:
    raw = json.dumps({"__metadata__": metadata}).encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw + b"\x00" * 64


def with_resolver(server, scenario, store=None):
    """Run scenario(resolver) inside an event loop with a mocked client."""
    store = store or RecordStore()

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            registry     = RangeCapabilityRegistry(store=store)
            orchestrator = FetchOrchestrator(client, registry)
            resolver     = MetadataResolver(MetadataCache(store), orchestrator)
            return await scenario(resolver)

    return asyncio.run(go())


# ---------------------------------------------------------------------------
# Group 1: Cache in front of the network
# ---------------------------------------------------------------------------

def test_second_resolve_is_served_from_cache():
    url    = "https://cdn.example.net/a.png"
    server = CountingServer({url: png_with_params()})

    async def scenario(resolver):
        first  = await resolver.resolve(url)
        before = server.requests
        second = await resolver.resolve(url)
        return first, second, before

    first, second, before = with_resolver(server, scenario)

    assert first.metadata == {"parameters": PARAMS}
    assert not first.cached
    assert second.cached
    assert second.metadata == first.metadata
    assert server.requests == before


def test_empty_result_is_cached():
    url    = "https://cdn.example.net/none.png"
    buf    = io.BytesIO()
    Image.new("RGB", (16, 16)).save(buf, format="PNG")
    server = CountingServer({url: buf.getvalue()})

    async def scenario(resolver):
        await resolver.resolve(url)
        return await resolver.resolve(url)

    result = with_resolver(server, scenario)
    assert result.cached
    assert result.metadata == {}
    assert server.requests == 1


def test_cache_persists_across_resolvers():
    url    = "https://cdn.example.net/a.png"
    server = CountingServer({url: png_with_params()})
    store  = RecordStore()

    with_resolver(server, lambda r: r.resolve(url), store)
    result = with_resolver(server, lambda r: r.resolve(url), store)

    assert result.cached
    assert server.requests == 1


# ---------------------------------------------------------------------------
# Group 2: Caller-supplied bytes
# ---------------------------------------------------------------------------

def test_raw_bytes_bypass_network():
    url    = "blob:https://example.com/1234"
    server = CountingServer({})

    result = with_resolver(server, lambda r: r.resolve(url, raw_bytes=png_with_params()))

    assert result.metadata == {"parameters": PARAMS}
    assert result.fetch is None
    assert server.requests == 0


def test_raw_bytes_result_cached():
    url    = "blob:https://example.com/1234"
    server = CountingServer({})

    async def scenario(resolver):
        await resolver.resolve(url, raw_bytes=png_with_params())
        return await resolver.resolve_metadata(url)

    assert with_resolver(server, scenario) == {"parameters": PARAMS}
    assert server.requests == 0


# ---------------------------------------------------------------------------
# Group 3: Tensor archive retry
# ---------------------------------------------------------------------------

def test_cached_empty_tensor_result_retried_once():
    url    = "https://models.example.net/lora.safetensors"
    meta   = {"ss_output_name": "ink_style"}
    server = CountingServer({url: tensor_archive(meta)})
    store  = RecordStore()
    MetadataCache(store).set(url, {})

    async def scenario(resolver):
        first  = await resolver.resolve(url)
        second = await resolver.resolve(url)
        return first, second

    first, second = with_resolver(server, scenario, store)

    assert first.metadata == meta
    assert not first.cached
    assert second.cached
    assert server.requests == 1


def test_cached_empty_image_result_not_retried():
    url    = "https://cdn.example.net/a.png"
    server = CountingServer({url: png_with_params()})
    store  = RecordStore()
    MetadataCache(store).set(url, {})

    result = with_resolver(server, lambda r: r.resolve(url), store)

    assert result.cached
    assert result.metadata == {}
    assert server.requests == 0


# ---------------------------------------------------------------------------
# Group 4: Failures and data management
# ---------------------------------------------------------------------------

def test_transport_error_propagates_and_is_not_cached():
    url    = "https://cdn.example.net/missing.png"
    server = CountingServer({})
    store  = RecordStore()

    with pytest.raises(TransportError):
        with_resolver(server, lambda r: r.resolve(url), store)

    assert not MetadataCache(store).has(url)


def test_corrupt_file_cached_as_empty():
    url    = "https://cdn.example.net/broken.jpg"
    server = CountingServer({url: b"\xff\xd8\xff\xe0\x00\x01" + b"\x00" * 500})

    async def scenario(resolver):
        first  = await resolver.resolve(url)
        second = await resolver.resolve(url)
        return first, second

    first, second = with_resolver(server, scenario)

    assert first.metadata == {}
    assert second.cached
    assert second.metadata == {}
    assert server.requests == 1


def test_clear_all_and_statistics():
    url    = "https://cdn.example.net/a.png"
    server = CountingServer({url: png_with_params()})

    async def scenario(resolver):
        await resolver.resolve(url)
        resolver.orchestrator.registry.mark_unsupported("strict.example.net")
        before  = resolver.statistics()
        cleared = resolver.clear_all()
        after   = resolver.statistics()
        return before, cleared, after

    before, cleared, after = with_resolver(server, scenario)

    assert before["persistent_cache"]["item_count"] == 1
    assert before["range_block_list"] == {"domain_count": 1, "domains": ["strict.example.net"]}
    assert cleared == {"persistent_cache": 1, "range_block_list": 1}
    assert after["persistent_cache"]["item_count"] == 0
    assert after["range_block_list"]["domain_count"] == 0
