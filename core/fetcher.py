"""
Adaptive fetch orchestrator.

Downloads only as much of a resource as the metadata parser needs:

    PROBE_RANGE     Range: bytes=0-65535
        │ Incomplete(n)                    range error / timeout / bad status
        ▼                                  (host recorded as range-incapable)
    ESCALATE_RANGE  Range: bytes=0-(n-1)  ─────────────┐
        │ Incomplete again                             │
        ▼                                              ▼
    FULL_FETCH      plain GET  ◄───────────────────────┘
        │
        ▼
    DONE

A 200 answer to a range request is the whole body — accepted as is, host
not recorded. A host already known to be range-incapable starts at
FULL_FETCH. A PNG with no chunk metadata is fully downloaded before the
stealth decoder runs, because that decoder needs every pixel.

Only a failed FULL_FETCH raises (TransportError). Everything else degrades
to an empty, cacheable result.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from urllib.parse import urlsplit

import httpx

from core.errors import TransportError
from core.format_handler import ContainerKind, sniff
from core.outcome import Complete, Failed, Incomplete
from core.parser import parse_metadata
from core.png_metadata import TARGET_KEYWORDS
from core.range_registry import RangeCapabilityRegistry
from core.stealth_decoder import StealthChannelDecoder

logger = logging.getLogger(__name__)

DEFAULT_PROBE_BYTES      = 65536
DEFAULT_ESCALATION_BYTES = 131072
DEFAULT_RANGE_TIMEOUT    = 10.0
DEFAULT_FULL_TIMEOUT     = 60.0

_CONTENT_RANGE = re.compile(r"bytes\s+(?:\d+-\d+|\*)/(\d+)")


class FetchStage(IntEnum):
    PROBE_RANGE    = 0
    ESCALATE_RANGE = 1
    FULL_FETCH     = 2
    DONE           = 3


@dataclass
class FetchState:
    """
    Per-request transient state.

    Attributes:
        url           : the resource being resolved
        stage         : active stage of the state machine
        range_size    : bytes to request at the current ranged stage
        data          : bytes held so far (always a prefix of the resource)
        partial       : True if data is known or assumed to be a prefix only
        total_length  : full resource length, when the server reported it
        requests      : HTTP requests issued
        bytes_fetched : body bytes received across all requests
    """
    url           : str
    stage         : FetchStage = FetchStage.PROBE_RANGE
    range_size    : int        = DEFAULT_PROBE_BYTES
    data          : bytes      = b""
    partial       : bool       = False
    total_length  : int | None = None
    requests      : int        = 0
    bytes_fetched : int        = 0


@dataclass
class FetchResult:
    """
    Output of one orchestrator run.

    Attributes:
        metadata      : the extracted MetadataMap (possibly empty)
        stage         : the last data-producing stage reached
        requests      : HTTP requests issued
        bytes_fetched : body bytes received
        complete_body : True if the whole resource ended up in memory
    """
    metadata      : dict
    stage         : FetchStage
    requests      : int
    bytes_fetched : int
    complete_body : bool


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def content_range_total(header: str | None) -> int | None:
    """Parse the total length from 'bytes 0-99/1234'. None if unknown ('*')."""
    if not header:
        return None
    match = _CONTENT_RANGE.match(header.strip())
    return int(match.group(1)) if match else None


class FetchOrchestrator:
    """
    Drives range probe → escalation → full fetch for one URL at a time.
    Independent runs may be awaited concurrently; each has its own state.

    Args:
        client           : shared httpx.AsyncClient
        registry         : hosts known not to honour range requests
        stealth_decoder  : alpha channel decoder; None disables the check
        probe_bytes      : size of the first range request
        escalation_bytes : second range size when the parser gives no hint
        range_timeout    : seconds before a range request is cancelled
        full_timeout     : seconds before a full download is cancelled
        keywords         : PNG text keywords to keep
    """

    def __init__(
        self,
        client           : httpx.AsyncClient,
        registry         : RangeCapabilityRegistry,
        stealth_decoder  : StealthChannelDecoder | None = None,
        probe_bytes      : int   = DEFAULT_PROBE_BYTES,
        escalation_bytes : int   = DEFAULT_ESCALATION_BYTES,
        range_timeout    : float = DEFAULT_RANGE_TIMEOUT,
        full_timeout     : float = DEFAULT_FULL_TIMEOUT,
        keywords         : tuple[str, ...] = TARGET_KEYWORDS,
    ):
        self.client           = client
        self.registry         = registry
        self.stealth_decoder  = stealth_decoder
        self.probe_bytes      = probe_bytes
        self.escalation_bytes = escalation_bytes
        self.range_timeout    = range_timeout
        self.full_timeout     = full_timeout
        self.keywords         = keywords

    # -----------------------------------------------------------------------
    # Public entry points
    # -----------------------------------------------------------------------

    async def run(self, url: str) -> FetchResult:
        """
        Fetch just enough of url to extract its metadata.

        Raises:
            TransportError: if the full download fails.
        """
        host  = _host(url)
        state = FetchState(url=url, range_size=self.probe_bytes)

        if not self.registry.allows_range(host):
            logger.debug("[FETCH] Skipping range for blocked domain %s, fetching full", host)
            state.stage = FetchStage.FULL_FETCH

        metadata = None
        while metadata is None:
            if state.stage is FetchStage.FULL_FETCH:
                await self._fetch_full(state)
            else:
                try:
                    await self._fetch_range(state)
                except TransportError as e:
                    logger.debug("[FETCH] Range request failed or aborted: %s", e)
                    self.registry.mark_unsupported(host, str(e))
                    state.stage = FetchStage.FULL_FETCH
                    continue
            metadata = self._advance(state)

        if not metadata and self._wants_stealth(state.data):
            if state.partial:
                logger.debug("[FETCH] No standard metadata in partial data. "
                             "Downloading full image for stealth check: %s", url)
                await self._fetch_full(state)
            metadata = self._with_stealth(state.data, metadata)

        result = FetchResult(
            metadata      = metadata,
            stage         = state.stage,
            requests      = state.requests,
            bytes_fetched = state.bytes_fetched,
            complete_body = not state.partial,
        )
        state.stage = FetchStage.DONE
        return result

    def extract_complete(self, data: bytes) -> dict:
        """
        Extract metadata from a buffer known to hold the whole resource
        (caller-supplied bytes). Never raises.
        """
        outcome = parse_metadata(data, len(data), self.keywords)
        if isinstance(outcome, Complete):
            metadata = outcome.metadata
        else:
            logger.warning("[FETCH] Metadata extraction failed on full data: %s",
                           getattr(outcome, "error", outcome))
            metadata = {}

        if not metadata and self._wants_stealth(data):
            metadata = self._with_stealth(data, metadata)
        return metadata

    async def media_size(self, url: str) -> int | None:
        """
        Resource size in bytes without downloading it: HEAD Content-Length,
        falling back to a one-byte range request's Content-Range total.

        Raises:
            TransportError: if neither request succeeds.
        """
        response = await self._send("HEAD", url, self.range_timeout)
        if response.is_success:
            length = response.headers.get("Content-Length")
            return int(length) if length and length.isdigit() else None

        response = await self._send("GET", url, self.range_timeout,
                                    headers={"Range": "bytes=0-0"})
        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}", url, response.status_code)
        return content_range_total(response.headers.get("Content-Range"))

    # -----------------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------------

    def _advance(self, state: FetchState) -> dict | None:
        """
        Parse the bytes in hand and pick the next stage.

        Returns:
            The final metadata, or None if another fetch is needed.
        """
        outcome = parse_metadata(state.data, state.total_length, self.keywords)

        if isinstance(outcome, Complete):
            return outcome.metadata

        if not state.partial:
            # Whole body in hand, so this is a Failed — corrupt, not short
            logger.warning("[FETCH] Metadata extraction failed on full data for %s: %s",
                           state.url, getattr(outcome, "error", outcome))
            return {}

        suggested = None
        if isinstance(outcome, Incomplete):
            suggested = outcome.suggested_min_bytes
        elif isinstance(outcome, Failed):
            # Parse errors on a truncated prefix are expected — retry wider
            logger.debug("[FETCH] Parse error on partial data: %s", outcome.error)

        if state.stage is FetchStage.PROBE_RANGE:
            next_size = suggested or self.escalation_bytes
            if next_size > len(state.data):
                logger.debug("[FETCH] Metadata is incomplete. Retrying with larger range: 0-%d",
                             next_size - 1)
                state.stage      = FetchStage.ESCALATE_RANGE
                state.range_size = next_size
                return None

        logger.debug("[FETCH] Still incomplete. Falling back to full fetch.")
        state.stage = FetchStage.FULL_FETCH
        return None

    async def _fetch_range(self, state: FetchState) -> None:
        """
        Request bytes 0..range_size-1.

        Raises:
            TransportError: on error, timeout, or a status other than 206/200.
        """
        end = state.range_size - 1
        state.requests += 1
        response = await self._send("GET", state.url, self.range_timeout,
                                    headers={"Range": f"bytes=0-{end}"})

        if response.status_code == 206:
            body  = response.content
            total = content_range_total(response.headers.get("Content-Range"))
            state.data          = body
            state.total_length  = total
            state.partial       = total is None or len(body) < total
            logger.debug("[FETCH] Range request success (0-%d)", end)
        elif response.status_code == 200:
            # Server ignored the range and sent everything — no harm done
            logger.debug("[FETCH] Server ignored Range, received full content")
            state.data         = response.content
            state.total_length = len(state.data)
            state.partial      = False
        else:
            raise TransportError(
                f"Range request failed with status {response.status_code}",
                state.url, response.status_code,
            )

        state.bytes_fetched += len(state.data)

    async def _fetch_full(self, state: FetchState) -> None:
        """
        Download the whole resource.

        Raises:
            TransportError: on error, timeout, or a non-2xx status.
        """
        state.stage = FetchStage.FULL_FETCH
        state.requests += 1
        response = await self._send("GET", state.url, self.full_timeout)
        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code}", state.url, response.status_code)

        state.data          = response.content
        state.total_length  = len(state.data)
        state.partial       = False
        state.bytes_fetched += len(state.data)

    async def _send(
        self,
        method  : str,
        url     : str,
        timeout : float,
        headers : dict | None = None,
    ) -> httpx.Response:
        """
        Issue one request bounded by timeout. The in-flight request is
        cancelled when the timeout fires.
        """
        try:
            return await asyncio.wait_for(
                self.client.request(method, url, headers=headers),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} timed out after {timeout:g}s", url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}", url) from e

    # -----------------------------------------------------------------------
    # Stealth channel
    # -----------------------------------------------------------------------

    def _wants_stealth(self, data: bytes) -> bool:
        return self.stealth_decoder is not None and sniff(data) is ContainerKind.PNG

    def _with_stealth(self, data: bytes, metadata: dict) -> dict:
        hidden = self.stealth_decoder.decode(data)
        if not hidden:
            return metadata
        return {**metadata, **hidden}
