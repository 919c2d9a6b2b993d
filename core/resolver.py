"""
Metadata resolver — the single entry point for metadata lookups.

The caller supplies a URL (and optionally the raw bytes, for locally
sourced data) and gets back a MetadataMap. The caller never needs to know
how much of the resource was downloaded, or whether the answer came from
the cache.

Resolution order:
    1. Cache     — an earlier answer, including "checked, nothing found"
    2. Raw bytes — parsed directly, no network
    3. Fetch     — adaptive range probe / escalation / full download

Failure philosophy:
    Only a failed full download raises (TransportError). Corrupt files and
    files without metadata resolve to an empty map, which is cached like
    any other answer.
"""

import logging
from dataclasses import dataclass

from core.cache import MetadataCache
from core.fetcher import FetchOrchestrator, FetchResult
from core.format_handler import is_tensor_archive_url

logger = logging.getLogger(__name__)


@dataclass
class ResolveResult:
    """
    Structured output from the resolver.

    Attributes:
        url      : the URL as requested — the cache key
        metadata : extracted MetadataMap (empty if nothing was found)
        cached   : True if served from the cache without any network access
        fetch    : orchestrator statistics; None for cache hits and raw bytes
    """
    url      : str
    metadata : dict
    cached   : bool               = False
    fetch    : FetchResult | None = None


class MetadataResolver:
    """
    Cache-fronted metadata lookup.

    Args:
        cache        : persistent URL → MetadataMap cache
        orchestrator : fetch state machine used on a cache miss
    """

    def __init__(self, cache: MetadataCache, orchestrator: FetchOrchestrator):
        self.cache        = cache
        self.orchestrator = orchestrator
        # Tensor archive URLs whose cached empty result was already retried
        self._tensor_retried: set[str] = set()

    async def resolve(self, url: str, raw_bytes: bytes | None = None) -> ResolveResult:
        """
        Resolve metadata for url.

        Args:
            url       : resource URL; also the cache key
            raw_bytes : the complete resource, if the caller already has it

        Returns:
            ResolveResult

        Raises:
            TransportError: if the resource could not be downloaded.
        """
        cached = self.cache.get(url)
        if cached is not None:
            if self._should_retry_empty(url, cached):
                logger.debug("[CACHE] Cached metadata is empty for tensor archive. "
                             "Bypassing cache to retry: %s", url)
            else:
                logger.debug("[CACHE] Persistent cache hit: %s", url)
                return ResolveResult(url=url, metadata=cached, cached=True)

        fetch = None
        if raw_bytes is not None:
            logger.debug("[FETCH] Using provided data for %s (%d bytes)", url, len(raw_bytes))
            metadata = self.orchestrator.extract_complete(raw_bytes)
        else:
            fetch    = await self.orchestrator.run(url)
            metadata = fetch.metadata

        # Cached whether empty or not — the next lookup needs no network
        self.cache.set(url, metadata)
        return ResolveResult(url=url, metadata=metadata, fetch=fetch)

    async def resolve_metadata(self, url: str, raw_bytes: bytes | None = None) -> dict:
        """Resolve and return only the MetadataMap."""
        return (await self.resolve(url, raw_bytes)).metadata

    def _should_retry_empty(self, url: str, cached: dict) -> bool:
        """
        Tensor archive URLs were once misread as images and cached empty.
        Such an entry is retried once per process with the current parser.
        """
        if cached or not is_tensor_archive_url(url) or url in self._tensor_retried:
            return False
        self._tensor_retried.add(url)
        return True

    # -----------------------------------------------------------------------
    # Data management
    # -----------------------------------------------------------------------

    def clear_cache(self) -> int:
        count = self.cache.clear()
        logger.debug("[CACHE] Cleared %d items", count)
        return count

    def clear_all(self) -> dict:
        """Clear the metadata cache and the range block list."""
        cleared = {
            "persistent_cache" : self.cache.clear(),
            "range_block_list" : self.orchestrator.registry.clear(),
        }
        self._tensor_retried.clear()
        logger.info("[CACHE] Cleared %d cached items and %d blocked domains",
                    cleared["persistent_cache"], cleared["range_block_list"])
        return cleared

    def statistics(self) -> dict:
        registry = self.orchestrator.registry
        return {
            "persistent_cache" : self.cache.statistics(),
            "range_block_list" : {
                "domain_count" : len(registry),
                "domains"      : registry.hosts,
            },
        }
