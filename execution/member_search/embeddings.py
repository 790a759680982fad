"""
Query Embeddings for Member Search

Embeds search text through a priority chain of providers and caches the
vectors with single-flight de-duplication.

Architecture:
    BaseEmbeddingProvider      -- shared client handling and embed()
        VoyageEmbeddingProvider   -- Voyage AI
        CohereEmbeddingProvider   -- Cohere embed-v3
    EmbeddingProviderChain     -- model-version aware fallback chain with
                                  retry policy and circuit breakers
    EmbeddingCache             -- TTL + LRU cache, one in-flight provider
                                  call per key no matter how many waiters

Vectors from different model versions are never interchangeable, so the
chain only falls back between providers that serve the requested version.
"""

import os
import time
import hashlib
import logging
import threading
from typing import Callable, Optional
from dataclasses import dataclass
from collections import OrderedDict
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError

import numpy as np

from .config import EmbeddingConfig
from .errors import ProviderError, ProviderTimeoutError, ProviderUnavailableError, ValidationError
from .retry import CircuitBreaker, Deadline, RetryPolicy

logger = logging.getLogger(__name__)


def validate_embedding(vector, dimensions: int) -> list[float]:
    """
    Check a provider vector before it is cached or compared.

    Raises:
        ValueError: wrong dimension, non-finite values, or zero norm
    """
    arr = np.asarray(vector, dtype=float)
    if arr.ndim != 1 or arr.shape[0] != dimensions:
        raise ValueError(f"Expected {dimensions} dimensions, got {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Embedding contains NaN or infinite values")
    if float(np.linalg.norm(arr)) == 0.0:
        raise ValueError("Embedding has zero norm")
    return arr.tolist()


# =============================================================================
# Providers
# =============================================================================

class BaseEmbeddingProvider:
    """
    Base class for API-based query embedding providers.

    Subclasses implement _init_client() and set:
    - _provider_name: Human-readable provider name for logs and errors
    - _env_var_name: Environment variable holding the API key
    - _query_input_type: Provider input type for search queries
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _query_input_type: str = "query"

    def __init__(self, model: str, dimensions: int = 1024, client=None):
        self.model = model
        self.dimensions = dimensions
        self._client = client
        if self._client is None:
            self._init_client()

    @property
    def name(self) -> str:
        return self._provider_name

    @property
    def model_version(self) -> str:
        return self.model

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def embed(self, text: str) -> list[float]:
        if not self._client:
            raise ProviderUnavailableError(
                f"{self._provider_name} client not initialized. Check {self._env_var_name}.",
                provider=self._provider_name,
            )
        response = self._client.embed(
            texts=[text],
            model=self.model,
            input_type=self._query_input_type,
        )
        return list(response.embeddings[0])


class VoyageEmbeddingProvider(BaseEmbeddingProvider):
    """Query embeddings from Voyage AI."""

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _query_input_type = "query"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")
        if not api_key:
            logger.warning("VOYAGE_API_KEY not found. Voyage embeddings will fail.")
            return
        try:
            import voyageai
            self._client = voyageai.Client(api_key=api_key)
            logger.info(f"Voyage AI client initialized with model {self.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise


class CohereEmbeddingProvider(BaseEmbeddingProvider):
    """Query embeddings from Cohere embed-v3."""

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"
    _query_input_type = "search_query"

    def _init_client(self):
        api_key = os.getenv("COHERE_API_KEY")
        if not api_key:
            logger.warning("COHERE_API_KEY not found. Cohere embeddings will fail.")
            return
        try:
            import cohere
            self._client = cohere.Client(api_key)
            logger.info(f"Cohere client initialized with model {self.model}")
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise


class EmbeddingProviderChain:
    """
    Ordered fallback across providers serving the same model version.

    Each provider call runs under the RetryPolicy and is skipped while its
    circuit breaker is open.
    """

    def __init__(
        self,
        providers: list,
        retry_policy: Optional[RetryPolicy] = None,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
    ):
        self._providers = providers
        self._policy = retry_policy or RetryPolicy(max_attempts=2, backoff_seconds=[0.2], attempt_timeout=3.0)
        self._breakers = {
            id(p): CircuitBreaker(p.name, failure_threshold, reset_timeout) for p in providers
        }

    def model_versions(self) -> list[str]:
        versions = []
        for p in self._providers:
            if p.model_version not in versions:
                versions.append(p.model_version)
        return versions

    def embed(self, text: str, model_version: str, deadline: Optional[Deadline] = None) -> list[float]:
        """
        Embed ``text`` with the first healthy provider for ``model_version``.

        Raises:
            ProviderTimeoutError: the last provider tried timed out
            ProviderUnavailableError: no provider could produce a valid vector
        """
        candidates = [p for p in self._providers if p.model_version == model_version]
        if not candidates:
            raise ProviderUnavailableError(f"No embedding provider serves model version {model_version}")

        last_error: Optional[ProviderError] = None
        for provider in candidates:
            breaker = self._breakers[id(provider)]
            if breaker.is_open():
                logger.info(f"Circuit open for {provider.name}, skipping")
                continue

            try:
                vector = self._policy.call(
                    lambda p=provider: validate_embedding(p.embed(text), p.dimensions),
                    deadline=deadline,
                    label=provider.name,
                )
            except ProviderError as e:
                breaker.record_failure()
                last_error = e
                logger.warning(f"Embedding provider {provider.name} failed: {e.message}")
                continue

            breaker.record_success()
            return vector

        if isinstance(last_error, ProviderTimeoutError):
            raise last_error
        raise ProviderUnavailableError(
            f"All embedding providers for {model_version} exhausted",
            cause=last_error,
        )


# =============================================================================
# Cache
# =============================================================================

@dataclass
class QueryEmbeddingCacheEntry:
    """A cached query vector."""
    vector: list[float]
    hit_count: int
    last_used: float
    expires_at: float


class EmbeddingCache:
    """
    TTL + LRU cache for query embeddings with single-flight misses.

    Usage:
        cache = EmbeddingCache(provider_chain, ttl_seconds=86400)
        vector = cache.embed("AI experts in Chennai", "voyage-3")

    Concurrent misses for the same (text, model version) share one
    provider call; every waiter gets the same vector or the same error.
    Failures are never cached.
    """

    def __init__(
        self,
        provider,
        ttl_seconds: int = 86400,
        max_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, QueryEmbeddingCacheEntry]" = OrderedDict()
        self._inflight: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._provider_calls = 0
        self._misses = 0

    @staticmethod
    def normalize(text: str) -> str:
        return " ".join((text or "").casefold().split())

    @staticmethod
    def make_key(normalized_text: str, model_version: str) -> str:
        content = f"{model_version}:{normalized_text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def embed(
        self,
        text: str,
        model_version: str,
        deadline: Optional[Deadline] = None,
        timeout: Optional[float] = None,
    ) -> list[float]:
        """
        Return the vector for ``text`` under ``model_version``.

        Raises:
            ValidationError: text is empty after normalization
            ProviderTimeoutError / ProviderUnavailableError: from the provider
        """
        normalized = self.normalize(text)
        if not normalized:
            raise ValidationError("Cannot embed empty text")

        key = self.make_key(normalized, model_version)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.expires_at > now:
                    entry.hit_count += 1
                    entry.last_used = now
                    self._entries.move_to_end(key)
                    logger.debug(f"Embedding cache hit ({entry.hit_count} hits)")
                    return list(entry.vector)
                del self._entries[key]

            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                self._provider_calls += 1
                self._misses += 1

        if not leader:
            # Waiters share the leader's whole budget, retries and fallbacks included
            wait = deadline.remaining() if deadline is not None else timeout
            try:
                return list(future.result(timeout=wait))
            except FuturesTimeoutError as e:
                raise ProviderTimeoutError("Timed out waiting for in-flight embedding", cause=e)

        try:
            vector = self._provider.embed(normalized, model_version, deadline=deadline)
        except Exception as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        now = self._clock()
        with self._lock:
            self._entries[key] = QueryEmbeddingCacheEntry(
                vector=list(vector),
                hit_count=0,
                last_used=now,
                expires_at=now + self._ttl,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
            self._inflight.pop(key, None)

        future.set_result(vector)
        return list(vector)

    def sweep_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug(f"Swept {len(expired)} expired embeddings")
        return len(expired)

    def get_entry(self, text: str, model_version: str) -> Optional[QueryEmbeddingCacheEntry]:
        with self._lock:
            return self._entries.get(self.make_key(self.normalize(text), model_version))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": sum(e.hit_count for e in self._entries.values()),
                "misses": self._misses,
                "provider_calls": self._provider_calls,
                "inflight": len(self._inflight),
            }


def get_embedding_provider_chain(config: Optional[EmbeddingConfig] = None) -> EmbeddingProviderChain:
    """
    Factory for the provider chain named in ``config.providers``.

    Each provider is built for the model it serves; only those matching the
    requested model version take part in a given embed() call.
    """
    config = config or EmbeddingConfig()
    providers = []
    for name in config.providers:
        if name == "voyage":
            model = os.getenv("VOYAGE_MODEL", "voyage-3")
            providers.append(VoyageEmbeddingProvider(model=model, dimensions=config.dimensions))
        elif name == "cohere":
            model = os.getenv("COHERE_EMBED_MODEL", "embed-english-v3.0")
            providers.append(CohereEmbeddingProvider(model=model, dimensions=config.dimensions))
        else:
            logger.warning(f"Unknown embedding provider {name!r}, skipping")

    policy = RetryPolicy(
        max_attempts=config.max_attempts,
        backoff_seconds=[0.2, 0.5],
        attempt_timeout=config.timeout_seconds,
    )
    return EmbeddingProviderChain(providers, retry_policy=policy)


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    cfg = EmbeddingConfig()
    cache = EmbeddingCache(get_embedding_provider_chain(cfg), ttl_seconds=cfg.cache_ttl_seconds)
    query = " ".join(sys.argv[1:]) or "AI experts in Chennai"

    start = time.time()
    vec = cache.embed(query, cfg.model_version)
    print(f"First call: {len(vec)} dims in {(time.time() - start) * 1000:.0f}ms")

    start = time.time()
    cache.embed(query, cfg.model_version)
    print(f"Cached call: {(time.time() - start) * 1000:.2f}ms")
    print(cache.stats())
