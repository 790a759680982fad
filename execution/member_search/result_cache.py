"""
Ranked-Response Cache

Caches final search responses keyed by normalized query text, applied
filters, tenant and page size. Each tenant carries a generation counter
that is folded into every key; invalidate_tenant() bumps it, so all
earlier entries for that tenant become unreachable at once and age out
by TTL.

Backend failures never fail a search: lookups and stores fall through to
the compute function (always-miss).
"""

import json
import hashlib
import logging
from typing import Callable, Optional

from .config import CacheConfig
from .errors import CacheUnavailable, MemberSearchError
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)


def normalize_query(text: str) -> str:
    return " ".join((text or "").casefold().split())


class ResultCache:
    """
    Usage:
        cache = ResultCache(kv_store)
        response, hit = cache.get_or_compute(
            {"query": text, "filters": filters, "tenant_id": "t1", "max_results": 10},
            compute_fn,
        )
    """

    def __init__(self, kv: KeyValueStore, config: Optional[CacheConfig] = None):
        self.kv = kv
        self.config = config or CacheConfig()
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @staticmethod
    def generation_key(tenant_id: str) -> str:
        return f"result_gen:{tenant_id}"

    def _generation(self, tenant_id: str) -> int:
        value = self.kv.get(self.generation_key(tenant_id))
        return int(value) if value else 0

    @staticmethod
    def make_key(
        query_text: str,
        filters: dict,
        tenant_id: str,
        max_results: int,
        generation: int = 0,
    ) -> str:
        """Deterministic key; filter dicts are serialized with sorted keys."""
        payload = json.dumps(
            {
                "query": normalize_query(query_text),
                "filters": filters or {},
                "tenant_id": tenant_id,
                "max_results": max_results,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        digest = hashlib.sha256(payload.encode()).hexdigest()[:40]
        return f"result:{tenant_id}:{generation}:{digest}"

    def get_or_compute(
        self,
        key_parts: dict,
        compute_fn: Callable[[], dict],
        should_cache: Optional[Callable[[dict], bool]] = None,
    ) -> tuple[dict, bool]:
        """
        Return ``(response, cache_hit)``.

        ``key_parts`` holds query, filters, tenant_id and max_results.
        ``compute_fn`` must return a JSON-serializable dict; it is not
        called on a hit. Exceptions from ``compute_fn`` propagate and
        nothing is stored. Responses rejected by ``should_cache`` are
        returned but not stored.
        """
        if not self.config.enabled:
            return compute_fn(), False

        tenant_id = key_parts["tenant_id"]
        key = None
        try:
            key = self.make_key(
                key_parts.get("query", ""),
                key_parts.get("filters", {}),
                tenant_id,
                key_parts.get("max_results"),
                generation=self._generation(tenant_id),
            )
            entry = self.kv.get(key)
        except MemberSearchError as e:
            self._errors += 1
            logger.warning(f"Result cache lookup failed, bypassing cache: {e}")
            entry = None

        if entry and entry.get("tenant_id") == tenant_id:
            self._hits += 1
            try:
                self.kv.incr(f"{key}:hits", ttl_seconds=self.config.result_ttl_seconds)
            except MemberSearchError as e:
                logger.debug(f"Result cache hit counter not updated: {e}")
            logger.debug(f"Result cache hit for tenant {tenant_id}")
            return entry["response"], True

        self._misses += 1
        response = compute_fn()

        if key is not None and (should_cache is None or should_cache(response)):
            try:
                self.kv.set(
                    key,
                    {"tenant_id": tenant_id, "response": response},
                    ttl_seconds=self.config.result_ttl_seconds,
                )
            except MemberSearchError as e:
                self._errors += 1
                logger.warning(f"Result cache store failed: {e}")

        return response, False

    def hit_count(self, key_parts: dict) -> int:
        """Hits recorded for the entry ``key_parts`` currently maps to."""
        tenant_id = key_parts["tenant_id"]
        key = self.make_key(
            key_parts.get("query", ""),
            key_parts.get("filters", {}),
            tenant_id,
            key_parts.get("max_results"),
            generation=self._generation(tenant_id),
        )
        return int(self.kv.get(f"{key}:hits") or 0)

    def invalidate_tenant(self, tenant_id: str) -> int:
        """
        Make every cached response for ``tenant_id`` unreachable.

        Returns:
            The tenant's new cache generation.

        Raises:
            CacheUnavailable: the backend could not record the invalidation
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        try:
            generation = self.kv.incr(self.generation_key(tenant_id))
        except MemberSearchError as e:
            logger.error(f"Result cache invalidation failed for tenant {tenant_id}: {e}")
            raise CacheUnavailable(f"Could not invalidate tenant {tenant_id}: {e}", cause=e)
        logger.info(f"Invalidated result cache for tenant {tenant_id} (generation {generation})")
        return generation

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "enabled": self.config.enabled,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": self._hits / total if total else 0.0,
        }
