"""
Range capability registry.

Remembers hosts whose servers reject or mishandle HTTP range requests so
later fetches go straight to a full download instead of paying for a failed
probe first. A configurable set of domains is exempt: their ranged responses
fail for reasons unrelated to range support (signed redirects, transient
CDN errors), so they are never added, and any stale entry for them is
dropped at startup.
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_EXEMPT_DOMAINS = ("civitai.com",)

# Durable record name when a store is supplied
STORE_KEY = "range_block_list"


class RangeCapabilityRegistry:
    """
    Set of hostnames known not to honour range requests.

    Args:
        exempt_domains : domains (and their subdomains) never recorded
        store          : optional durable store with get/set/remove; the host
                         list is loaded from it and saved on every change
    """

    def __init__(self, exempt_domains=DEFAULT_EXEMPT_DOMAINS, store=None):
        self.exempt_domains = tuple(d.lower().strip(".") for d in exempt_domains if d)
        self._store = store
        self._hosts: set[str] = set()

        if store is not None:
            saved = store.get(STORE_KEY)
            if saved:
                self._hosts.update(h.lower() for h in saved)

        self.reconcile()

    def __contains__(self, host: str) -> bool:
        return host.lower() in self._hosts

    def __len__(self) -> int:
        return len(self._hosts)

    @property
    def hosts(self) -> list[str]:
        return sorted(self._hosts)

    def is_exempt(self, host: str) -> bool:
        host = host.lower()
        return any(host == d or host.endswith("." + d) for d in self.exempt_domains)

    def allows_range(self, host: str) -> bool:
        """True if a range probe should be attempted for this host."""
        if not host:
            return True
        return host.lower() not in self._hosts or self.is_exempt(host)

    def mark_unsupported(self, host: str, reason: str = "") -> bool:
        """
        Record a confirmed range failure.

        Returns:
            True if the host was added, False if it is exempt or empty.
        """
        if not host:
            return False
        if self.is_exempt(host):
            logger.debug("[RANGE] %s is exempt from blocking. Failure reason: %s", host, reason)
            return False

        host = host.lower()
        if host not in self._hosts:
            self._hosts.add(host)
            self._save()
            logger.info("[RANGE] Added %s to range block list. Failure reason: %s", host, reason)
        return True

    def reconcile(self) -> list[str]:
        """Drop exempt domains recorded before the exemption applied."""
        removed = [h for h in self._hosts if self.is_exempt(h)]
        if removed:
            self._hosts.difference_update(removed)
            self._save()
            logger.info("[RANGE] Startup cleanup removed %d exempt domain(s): %s",
                        len(removed), ", ".join(sorted(removed)))
        return removed

    def clear(self) -> int:
        """Forget every host. Returns the number removed."""
        count = len(self._hosts)
        self._hosts.clear()
        self._save()
        return count

    def _save(self) -> None:
        if self._store is None:
            return
        self._store.set(STORE_KEY, sorted(self._hosts))
