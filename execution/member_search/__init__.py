"""
Member Search - Natural-Language Member Directory Search

This module turns one incoming channel message into one ranked, cached,
rate-limited response:
- Intent and entity extraction (regex fast path, LLM slow path)
- Query embeddings with single-flight caching
- Tenant-scoped hybrid ranking over pgvector and full-text search
- Result caching with explicit per-tenant invalidation
- Externalized sessions and atomic per-user rate limits
"""

__version__ = "0.1.0"

from .extractor import PatternExtractor, LLMExtractor, ExtractorChain, Extraction, Entities
from .embeddings import EmbeddingCache, EmbeddingProviderChain
from .ranker import HybridRanker, HYBRID_SCORE_WEIGHTS
from .result_cache import ResultCache
from .session_store import SessionStore
from .kv_store import InMemoryKeyValueStore, PostgresKeyValueStore
from .orchestrator import QueryOrchestrator, SearchResponse, build_orchestrator

__all__ = [
    "PatternExtractor",
    "LLMExtractor",
    "ExtractorChain",
    "Extraction",
    "Entities",
    "EmbeddingCache",
    "EmbeddingProviderChain",
    "HybridRanker",
    "HYBRID_SCORE_WEIGHTS",
    "ResultCache",
    "SessionStore",
    "InMemoryKeyValueStore",
    "PostgresKeyValueStore",
    "QueryOrchestrator",
    "SearchResponse",
    "build_orchestrator",
]
