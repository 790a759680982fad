"""Tests for the FastAPI backend endpoints."""

import pytest

from fastapi.testclient import TestClient

from tests.conftest import (
    TENANT_A,
    FailingKV,
    MockEmbeddingProvider,
    MockMemberStore,
    build_test_orchestrator,
)


# ---------------------------------------------------------------------------
# Swap the ServiceContainer's orchestrator so no real DB or API is needed
# ---------------------------------------------------------------------------

def _install(orchestrator):
    from execution.member_search import api
    api._container._orchestrator = orchestrator
    return TestClient(api.app)


@pytest.fixture
def client(orchestrator):
    from execution.member_search import api
    yield _install(orchestrator)
    api._container._orchestrator = None


@pytest.fixture
def make_client():
    from execution.member_search import api
    yield lambda **kwargs: _install(build_test_orchestrator(**kwargs))
    api._container._orchestrator = None


def _message(text="find AI experts in Chennai", sender="u1", tenant=TENANT_A, **extra):
    return {"sender_id": sender, "text": text, "tenant_id": tenant, **extra}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:

    def test_health(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["database"] == "connected"
        assert data["kv_backend"] == "memory"

    def test_health_database_down(self, make_client, sample_members):
        from execution.member_search.errors import DataStoreError
        client = make_client(store=MockMemberStore(sample_members, error=DataStoreError("down")))
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["database"] == "disconnected"

    def test_health_handler_is_synchronous(self):
        import inspect
        from execution.member_search import api
        # Blocking database health check must run in the worker threadpool
        assert not inspect.iscoroutinefunction(api.health_check)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TestMessages:

    def test_member_search(self, client):
        resp = client.post("/api/v1/messages", json=_message(message_id="wa-1"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["route"] == "member_search"
        assert data["intent"] == "member_search"
        assert data["turn_id"] == "wa-1"
        assert {m["member_id"] for m in data["members"][:2]} == {"a-1", "a-2"}
        assert data["members"][0]["rank"] == 1
        assert "Anita Rao" in data["text"]

    def test_cache_hit_reported(self, client):
        client.post("/api/v1/messages", json=_message())
        resp = client.post("/api/v1/messages", json=_message())
        assert resp.json()["cache_hit"] is True

    def test_max_results_clamped(self, client):
        resp = client.post("/api/v1/messages", json=_message(max_results=0))
        assert resp.status_code == 200
        assert len(resp.json()["members"]) == 1

    def test_document_question(self, client):
        resp = client.post("/api/v1/messages", json=_message("What's the visitor parking policy?"))
        assert resp.status_code == 200
        assert resp.json()["route"] == "document_qa"
        assert resp.json()["members"] == []

    def test_empty_text_is_400(self, client):
        resp = client.post("/api/v1/messages", json=_message(""))
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "validation_error"
        assert data["retryable"] is False
        assert "empty" in data["text"]

    def test_overlong_text_is_400(self, client):
        resp = client.post("/api/v1/messages", json=_message("a" * 501))
        assert resp.status_code == 400

    def test_very_long_text_gets_clarifying_reply(self, client):
        resp = client.post("/api/v1/messages", json=_message("a" * 5000))
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "validation_error"
        assert "too long" in data["text"]
        assert "max 500" in data["text"]

    def test_missing_field_is_422(self, client):
        resp = client.post("/api/v1/messages", json={"sender_id": "u1", "text": "hi"})
        assert resp.status_code == 422

    def test_rate_limited_is_429(self, make_client, sample_members):
        from execution.member_search.config import MemberSearchConfig, SessionConfig
        client = make_client(
            store=MockMemberStore(sample_members),
            config=MemberSearchConfig(session=SessionConfig(searches_per_window=1)),
        )
        assert client.post("/api/v1/messages", json=_message()).status_code == 200
        resp = client.post("/api/v1/messages", json=_message())
        assert resp.status_code == 429
        data = resp.json()
        assert data["code"] == "rate_limit_exceeded"
        assert data["retry_after"] > 0
        assert resp.headers["Retry-After"] == str(data["retry_after"])
        assert "1 searches per hour" in data["text"]

    def test_member_store_down_is_503(self, make_client, sample_members):
        from execution.member_search.errors import DataStoreError
        client = make_client(store=MockMemberStore(sample_members, error=DataStoreError("timeout")))
        resp = client.post("/api/v1/messages", json=_message())
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True

    def test_embedding_outage_still_200(self, make_client, sample_members):
        from execution.member_search.errors import ProviderUnavailableError
        client = make_client(
            store=MockMemberStore(sample_members),
            embedding_provider=MockEmbeddingProvider(error=ProviderUnavailableError("down")),
        )
        resp = client.post("/api/v1/messages", json=_message())
        assert resp.status_code == 200
        assert resp.json()["degraded"] is True


# ---------------------------------------------------------------------------
# Tenant invalidation
# ---------------------------------------------------------------------------

class TestInvalidate:

    def test_invalidate(self, client):
        client.post("/api/v1/messages", json=_message())
        resp = client.post(f"/api/v1/tenants/{TENANT_A}/invalidate")
        assert resp.status_code == 200
        assert resp.json() == {"tenant_id": TENANT_A, "generation": 1}
        after = client.post("/api/v1/messages", json=_message())
        assert after.json()["cache_hit"] is False

    def test_invalidate_backend_down_is_503(self, client, orchestrator):
        from execution.member_search.result_cache import ResultCache
        orchestrator.result_cache = ResultCache(FailingKV())
        resp = client.post(f"/api/v1/tenants/{TENANT_A}/invalidate")
        assert resp.status_code == 503
        assert resp.json()["code"] == "cache_unavailable"


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestMetricsEndpoint:

    def test_metrics(self, client):
        client.post("/api/v1/messages", json=_message())
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["queries"]["total"] == 1
        assert data["routes"] == {"member_search": 1}
