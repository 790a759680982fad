"""
Shared fixtures and test utilities for Member Search tests.

Provides mock providers, an in-memory member store, sample members for two
tenants and a controllable clock, so that all tests can run without API
keys, databases, or external network access.
"""

import re
import sys
import time
import hashlib
import threading
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import replace

import numpy as np
import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
MODEL_VERSION = "voyage-3"
RANKING_NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock, usable wherever a ``time.time`` callable is expected."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class InlineExecutor:
    """Runs background work immediately so tests can assert on it."""

    def submit(self, fn, *args, **kwargs):
        fn(*args, **kwargs)


class FailingKV:
    """Key-value store whose backend is unreachable."""

    backend_name = "failing"

    def __init__(self):
        self.calls = 0

    def _fail(self, *args, **kwargs):
        from execution.member_search.errors import DataStoreError
        self.calls += 1
        raise DataStoreError("connection refused")

    get = set = delete = incr = update = check_and_increment = _fail


# ---------------------------------------------------------------------------
# Mock embedding provider
# ---------------------------------------------------------------------------

def deterministic_vector(text: str, dimensions: int = 16) -> list[float]:
    h = hashlib.sha256(text.encode()).hexdigest()
    seed = int(h[:8], 16)
    return [((seed + i * 37) % 1000) / 1000.0 + 0.001 for i in range(dimensions)]


class MockEmbeddingProvider:
    """Deterministic mock embedding provider -- never calls external APIs."""

    def __init__(self, dimensions=16, delay=0.0, error=None):
        self._dimensions = dimensions
        self._delay = delay
        self._error = error
        self._call_count = 0
        self._lock = threading.Lock()
        self.texts = []

    def embed(self, text, model_version, deadline=None):
        with self._lock:
            self._call_count += 1
            self.texts.append(text)
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return deterministic_vector(f"{model_version}:{text}", self._dimensions)

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_provider():
    return MockEmbeddingProvider()


# ---------------------------------------------------------------------------
# Mock extraction provider
# ---------------------------------------------------------------------------

class MockExtractionProvider:
    """Returns a canned structured payload, or raises."""

    def __init__(self, payload=None, error=None, delay=0.0):
        self._payload = payload
        self._error = error
        self._delay = delay
        self._call_count = 0
        self.histories = []

    @property
    def name(self):
        return "mock-llm"

    def extract_structured(self, text, schema, history=None):
        self._call_count += 1
        self.histories.append(list(history or []))
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return dict(self._payload)


# ---------------------------------------------------------------------------
# Mock member store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b) -> float:
    a, b = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


def _profile_text(member) -> str:
    parts = [member.name, member.organization or "", member.designation or "", member.city or ""]
    parts.extend(member.skills)
    parts.extend(member.services)
    return " ".join(parts).lower()


class MockMemberStore:
    """In-memory stand-in for MemberStore that mirrors its filtering."""

    def __init__(self, members=None, error=None, ignore_tenant=False):
        self._members = list(members or [])
        self._error = error
        self._ignore_tenant = ignore_tenant
        self.calls = []
        self.zero_results = []

    def connect(self):
        pass

    def close(self):
        pass

    def initialize_schema(self):
        pass

    def health_check(self):
        return self._error is None

    def search_candidates(self, tenant_id, filters, query_embedding=None, embedding_type="profile",
                          keyword_query=None, model_version=None, limit=200, timeout=None):
        self.calls.append({
            "tenant_id": tenant_id,
            "filters": filters.to_dict(),
            "embedding_type": embedding_type,
            "keyword_query": keyword_query,
            "used_vector": query_embedding is not None,
            "timeout": timeout,
        })
        if self._error is not None:
            raise self._error

        terms = [t.strip().lower() for t in (keyword_query or "").split(" or ") if t.strip()]
        results = []
        for member in self._members:
            if member.tenant_id != tenant_id and not self._ignore_tenant:
                continue
            if not filters.matches(member):
                continue
            text = _profile_text(member)
            rank = sum(0.1 for t in terms if re.search(rf"\b{re.escape(t)}\b", text))
            similarity = None
            if query_embedding is not None:
                similarity = _cosine(query_embedding, deterministic_vector(text, len(query_embedding)))
            results.append(replace(
                member,
                vector_similarity=similarity,
                keyword_rank=rank,
                model_version=model_version,
            ))
        return results[:limit]

    def log_zero_result(self, tenant_id, query_text, filters):
        self.zero_results.append((tenant_id, query_text, filters))


def _member(member_id, tenant_id, name, **kwargs):
    from execution.member_search.member_store import MemberCandidate
    kwargs.setdefault("created_at", datetime(2023, 1, 1, tzinfo=timezone.utc))
    kwargs.setdefault("updated_at", datetime(2025, 1, 1, tzinfo=timezone.utc))
    return MemberCandidate(member_id=member_id, tenant_id=tenant_id, name=name, **kwargs)


@pytest.fixture
def sample_members():
    """Members of two tenants; tenant B shares a name with tenant A on purpose."""
    return [
        _member(
            "a-1", TENANT_A, "Anita Rao", city="Chennai", organization="DeepSight Labs",
            designation="Data Scientist", degree="Computer Science Engineering",
            graduation_year=2015, skills=["AI", "Machine Learning"],
            email="anita@example.com", phone="+91 90000 00001",
        ),
        _member(
            "a-2", TENANT_A, "Bala Kumar", city="Chennai", organization="VisionWorks",
            designation="CTO", graduation_year=2012, skills=["AI", "Python"],
        ),
        _member(
            "a-3", TENANT_A, "Chitra Subramanian", city="Bangalore", organization="CloudNine",
            designation="ML Engineer", graduation_year=2015, skills=["AI", "cloud"],
        ),
        _member(
            "a-4", TENANT_A, "Dev Mehta", city="Chennai", organization="Mehta Industries",
            designation="Founder", member_type="entrepreneur", annual_turnover=80_000_000,
            skills=["manufacturing"], services=["export"], phone="+91 90000 00004",
        ),
        _member(
            "a-5", TENANT_A, "Esha Iyer", city="Chennai", organization="Iyer Castings",
            member_type="entrepreneur", annual_turnover=30_000_000, skills=["manufacturing"],
        ),
        _member(
            "a-6", TENANT_A, "Farid Khan", city="Mumbai", organization="Khan Capital",
            designation="Partner", graduation_year=2010, skills=["finance"],
        ),
        _member(
            "b-1", TENANT_B, "Anita Rao", city="Chennai", organization="Other Community Co",
            designation="AI Lead", graduation_year=2015, skills=["AI"],
        ),
    ]


@pytest.fixture
def mock_member_store(sample_members):
    return MockMemberStore(sample_members)


# ---------------------------------------------------------------------------
# Pipeline assembly
# ---------------------------------------------------------------------------

def make_extraction(intent="member_search", confidence=0.9, search_type="general", **entities):
    from execution.member_search.extractor import Entities, Extraction
    return Extraction(
        intent=intent,
        entities=Entities(**entities),
        confidence=confidence,
        search_type=search_type,
    )


def build_test_orchestrator(
    store=None,
    embedding_provider=None,
    extraction_provider=None,
    kv=None,
    clock=None,
    config=None,
    document_handler=None,
):
    """Wire a QueryOrchestrator from in-memory parts."""
    from execution.member_search.config import MemberSearchConfig
    from execution.member_search.embeddings import EmbeddingCache
    from execution.member_search.extractor import build_extractor_chain
    from execution.member_search.kv_store import InMemoryKeyValueStore
    from execution.member_search.orchestrator import QueryOrchestrator
    from execution.member_search.ranker import HybridRanker
    from execution.member_search.result_cache import ResultCache
    from execution.member_search.session_store import SessionStore

    config = config or MemberSearchConfig()
    clock = clock or FakeClock()
    kv = kv if kv is not None else InMemoryKeyValueStore(clock=clock)

    return QueryOrchestrator(
        sessions=SessionStore(kv, config.session, clock=clock),
        extractor=build_extractor_chain(extraction_provider, config.extractor),
        embeddings=EmbeddingCache(embedding_provider or MockEmbeddingProvider(), clock=clock),
        ranker=HybridRanker(
            store if store is not None else MockMemberStore(),
            config.ranker,
            clock=lambda: RANKING_NOW,
            background_executor=InlineExecutor(),
        ),
        result_cache=ResultCache(kv, config.cache),
        config=config,
        document_handler=document_handler,
    )


@pytest.fixture
def orchestrator(mock_member_store, clock):
    return build_test_orchestrator(store=mock_member_store, clock=clock)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.member_search.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
