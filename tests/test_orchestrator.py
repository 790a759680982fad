"""
Tests for execution/member_search/orchestrator.py

Covers: end-to-end message handling over in-memory parts -- tenant-scoped
        search, document and conversational routing, rate limiting,
        result caching with tenant invalidation, follow-up context and
        every degradation path (embedding outage, short deadline, store
        and session outages).
"""

import threading
from dataclasses import replace

import pytest

from tests.conftest import (
    TENANT_A,
    TENANT_B,
    FailingKV,
    MockEmbeddingProvider,
    MockMemberStore,
    build_test_orchestrator,
)


class CrashingExtractor:
    def extract(self, text, context=None):
        raise RuntimeError("pattern table corrupted")


class BlockingEmbeddingProvider(MockEmbeddingProvider):
    """Holds any query containing ``block_on`` until ``release`` is set."""

    def __init__(self, block_on):
        super().__init__()
        self.block_on = block_on
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, text, model_version, deadline=None):
        if self.block_on in text:
            self.entered.set()
            self.release.wait(timeout=5)
        return super().embed(text, model_version, deadline=deadline)


def _ids(response):
    return [m["member"]["member_id"] for m in response.members]


def _config(**session):
    from execution.member_search.config import MemberSearchConfig, SessionConfig
    return MemberSearchConfig(session=SessionConfig(**session))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestMemberSearch:
    """Tests for the member-search route."""

    def test_skill_and_location_search(self, orchestrator):
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert response.route == "member_search"
        assert response.intent == "member_search"
        assert set(_ids(response)[:2]) == {"a-1", "a-2"}
        assert all(m["member"]["tenant_id"] == TENANT_A for m in response.members)
        assert "Anita Rao" in response.text
        assert not response.cache_hit
        assert not response.degraded

    def test_results_never_cross_tenants(self, orchestrator):
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_B)
        assert _ids(response) == ["b-1"]

    def test_store_is_queried_for_the_callers_tenant(self, orchestrator, mock_member_store):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert {c["tenant_id"] for c in mock_member_store.calls} == {TENANT_A}

    def test_foreign_rows_are_dropped(self, sample_members):
        store = MockMemberStore(sample_members, ignore_tenant=True)
        orchestrator = build_test_orchestrator(store=store)
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert "b-1" not in _ids(response)
        assert response.members

    def test_business_search_with_turnover(self, orchestrator):
        response = orchestrator.search(
            "u1", "manufacturing businesses in Chennai with turnover above 5 crores", TENANT_A
        )
        assert _ids(response) == ["a-4"]
        assert response.extraction["search_type"] == "find_business"
        assert "Mehta Industries" in response.text
        assert "₹8.0 Cr" in response.text
        assert not response.broadened

    def test_max_results_clamped(self, orchestrator):
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A, max_results=0)
        assert len(response.members) == 1
        response = orchestrator.search("u2", "find AI experts in Chennai", TENANT_A, max_results=500)
        assert 1 <= len(response.members) <= 50

    def test_unknown_intent_is_searched(self, orchestrator):
        from execution.member_search.extractor import ExtractorChain
        orchestrator.extractor = ExtractorChain([CrashingExtractor()])
        response = orchestrator.search("u1", "robotics people", TENANT_A)
        assert response.route == "member_search"
        assert response.intent == "member_search"
        assert response.extraction["intent"] == "unknown"

    def test_suggestions_offered(self, orchestrator):
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert 0 < len(response.suggestions) <= 3


class TestRouting:
    """Tests for document and conversational routing."""

    def test_document_question_skips_member_store(self, orchestrator, mock_member_store):
        from execution.member_search.response_formatter import DOCUMENT_REDIRECT_MESSAGE
        response = orchestrator.search("u1", "What's the visitor parking policy?", TENANT_A)
        assert response.route == "document_qa"
        assert response.intent == "document_qa"
        assert response.extraction["entities"] == {}
        assert response.members == []
        assert response.text == DOCUMENT_REDIRECT_MESSAGE
        assert mock_member_store.calls == []

    def test_document_handler_used_when_configured(self, mock_member_store):
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            document_handler=lambda text, tenant: f"answer for {tenant}",
        )
        response = orchestrator.search("u1", "What's the visitor parking policy?", TENANT_A)
        assert response.text == f"answer for {TENANT_A}"

    def test_greeting(self, orchestrator, mock_member_store):
        from execution.member_search.response_formatter import GREETING_MESSAGE
        response = orchestrator.search("u1", "hello", TENANT_A)
        assert response.route == "conversational"
        assert response.text == GREETING_MESSAGE
        assert mock_member_store.calls == []


# ---------------------------------------------------------------------------
# Rate limiting and validation
# ---------------------------------------------------------------------------

class TestRateLimiting:
    """Tests for per-user admission."""

    def test_fifty_first_search_is_rejected(self, mock_member_store):
        from execution.member_search.errors import RateLimitExceeded
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            config=_config(searches_per_window=50, messages_per_window=100),
        )
        for _ in range(50):
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)

        history_before = [t.to_dict() for t in orchestrator.sessions.get_history("u1")]
        calls_before = len(mock_member_store.calls)

        with pytest.raises(RateLimitExceeded) as exc_info:
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)

        assert exc_info.value.category == "search"
        assert exc_info.value.retry_after > 0
        assert [t.to_dict() for t in orchestrator.sessions.get_history("u1")] == history_before
        assert len(mock_member_store.calls) == calls_before
        assert orchestrator.metrics.get_metrics_dict()["rate_limited"] == {"search": 1}

    def test_other_users_unaffected(self, mock_member_store):
        from execution.member_search.errors import RateLimitExceeded
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(searches_per_window=1))
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        with pytest.raises(RateLimitExceeded):
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert orchestrator.search("u2", "find AI experts in Chennai", TENANT_A).members

    def test_message_limit_checked_first(self, mock_member_store):
        from execution.member_search.errors import RateLimitExceeded
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(messages_per_window=1))
        orchestrator.search("u1", "hello", TENANT_A)
        with pytest.raises(RateLimitExceeded) as exc_info:
            orchestrator.search("u1", "hello", TENANT_A)
        assert exc_info.value.category == "message"

    def test_handle_message_reports_limit(self, mock_member_store):
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(searches_per_window=1))
        orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A)
        text = orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A)
        assert text.startswith("You've reached the limit of 1 searches per hour")

    def test_limit_text_follows_configured_window(self, mock_member_store):
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            config=_config(searches_per_window=1, rate_window_seconds=86400),
        )
        orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A)
        text = orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A)
        assert text.startswith("You've reached the limit of 1 searches per day")

    def test_only_member_searches_use_search_quota(self, mock_member_store):
        from execution.member_search.errors import RateLimitExceeded
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(searches_per_window=1))
        orchestrator.search("u1", "hello", TENANT_A)
        orchestrator.search("u1", "What's the visitor parking policy?", TENANT_A)

        assert orchestrator.search("u1", "find AI experts in Chennai", TENANT_A).members
        with pytest.raises(RateLimitExceeded) as exc_info:
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert exc_info.value.category == "search"

    def test_rejected_search_leaves_history_untouched(self, mock_member_store):
        from execution.member_search.errors import RateLimitExceeded
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(searches_per_window=1))
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A, turn_id="kept")
        with pytest.raises(RateLimitExceeded):
            orchestrator.search("u1", "find finance experts in Mumbai", TENANT_A, turn_id="rejected")
        assert [t.turn_id for t in orchestrator.sessions.get_history("u1")] == ["kept"]


class TestValidation:
    """Tests for request validation."""

    @pytest.mark.parametrize("text", ["", "   ", "a" * 501])
    def test_rejected_text(self, orchestrator, text):
        from execution.member_search.errors import ValidationError
        with pytest.raises(ValidationError):
            orchestrator.search("u1", text, TENANT_A)

    def test_max_length_accepted(self, orchestrator):
        response = orchestrator.search("u1", "a" * 500, TENANT_A)
        assert response.text

    @pytest.mark.parametrize("sender, tenant", [("", TENANT_A), ("u1", "")])
    def test_missing_ids(self, orchestrator, sender, tenant):
        from execution.member_search.errors import ValidationError
        with pytest.raises(ValidationError):
            orchestrator.search(sender, "find AI experts", tenant)

    def test_invalid_text_does_not_consume_search_budget(self, mock_member_store):
        from execution.member_search.errors import ValidationError
        orchestrator = build_test_orchestrator(store=mock_member_store, config=_config(searches_per_window=1))
        with pytest.raises(ValidationError):
            orchestrator.search("u1", "", TENANT_A)
        assert orchestrator.search("u1", "find AI experts in Chennai", TENANT_A).members

    def test_handle_message_explains(self, orchestrator):
        assert "empty" in orchestrator.handle_message("u1", "", TENANT_A)


# ---------------------------------------------------------------------------
# Result cache
# ---------------------------------------------------------------------------

class TestResultCaching:
    """Tests for cached responses and tenant invalidation."""

    def test_repeat_query_is_served_from_cache(self, orchestrator, mock_member_store):
        first = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        calls = len(mock_member_store.calls)
        second = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert not first.cache_hit
        assert second.cache_hit
        assert _ids(first) == _ids(second)
        assert len(mock_member_store.calls) == calls

    def test_invalidation_reflects_member_updates(self, orchestrator, mock_member_store):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)

        members = mock_member_store._members
        members[0] = replace(members[0], organization="NewCo Robotics")

        stale = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert stale.cache_hit
        assert "NewCo Robotics" not in stale.text

        assert orchestrator.invalidate_tenant(TENANT_A) == 1

        fresh = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert not fresh.cache_hit
        assert "NewCo Robotics" in fresh.text

    def test_invalidation_leaves_other_tenants_cached(self, orchestrator):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_B)
        orchestrator.invalidate_tenant(TENANT_A)
        assert orchestrator.search("u1", "find AI experts in Chennai", TENANT_B).cache_hit

    def test_cache_outage_still_answers(self, sample_members, clock):
        from execution.member_search.config import MemberSearchConfig
        from execution.member_search.kv_store import InMemoryKeyValueStore
        from execution.member_search.result_cache import ResultCache
        orchestrator = build_test_orchestrator(store=MockMemberStore(sample_members), clock=clock)
        orchestrator.result_cache = ResultCache(FailingKV(), MemberSearchConfig().cache)
        assert isinstance(orchestrator.sessions.kv, InMemoryKeyValueStore)

        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert response.members
        assert not response.cache_hit


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------

class TestDegradation:
    """Tests for fallbacks when dependencies fail or time runs short."""

    def test_embedding_outage_ranks_keyword_only(self, mock_member_store):
        from execution.member_search.errors import ProviderUnavailableError
        from execution.member_search.response_formatter import DEGRADED_NOTE
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            embedding_provider=MockEmbeddingProvider(error=ProviderUnavailableError("voyage down")),
        )
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert response.keyword_only
        assert response.degraded
        assert DEGRADED_NOTE in response.text
        assert set(_ids(response)[:2]) == {"a-1", "a-2"}
        assert mock_member_store.calls[-1]["used_vector"] is False

    def test_keyword_only_responses_are_not_cached(self, mock_member_store):
        from execution.member_search.errors import ProviderUnavailableError
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            embedding_provider=MockEmbeddingProvider(error=ProviderUnavailableError("voyage down")),
        )
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert not orchestrator.search("u1", "find AI experts in Chennai", TENANT_A).cache_hit

    def test_short_deadline_skips_embedding(self, mock_member_store):
        from execution.member_search.config import MemberSearchConfig, OrchestratorConfig
        provider = MockEmbeddingProvider()
        orchestrator = build_test_orchestrator(
            store=mock_member_store,
            embedding_provider=provider,
            config=MemberSearchConfig(orchestrator=OrchestratorConfig(request_deadline_seconds=0.1)),
        )
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert provider._call_count == 0
        assert response.keyword_only
        assert mock_member_store.calls[-1]["timeout"] == pytest.approx(0.5)

    def test_member_store_outage_raises(self, sample_members):
        from execution.member_search.errors import DataStoreError, SessionUnavailable
        store = MockMemberStore(sample_members, error=DataStoreError("statement timeout"))
        orchestrator = build_test_orchestrator(store=store)
        with pytest.raises(DataStoreError) as exc_info:
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        assert not isinstance(exc_info.value, SessionUnavailable)

    def test_member_store_outage_message(self, sample_members):
        from execution.member_search.errors import DataStoreError
        from execution.member_search.response_formatter import DATA_STORE_MESSAGE
        store = MockMemberStore(sample_members, error=DataStoreError("statement timeout"))
        orchestrator = build_test_orchestrator(store=store)
        assert orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A) == DATA_STORE_MESSAGE

    def test_session_store_outage(self, mock_member_store):
        from execution.member_search.errors import SessionUnavailable
        from execution.member_search.response_formatter import SESSION_UNAVAILABLE_MESSAGE
        orchestrator = build_test_orchestrator(store=mock_member_store, kv=FailingKV())
        with pytest.raises(SessionUnavailable):
            orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        text = orchestrator.handle_message("u1", "find AI experts in Chennai", TENANT_A)
        assert text == SESSION_UNAVAILABLE_MESSAGE
        assert mock_member_store.calls == []

    def test_crashing_extractor_still_answers(self, orchestrator):
        from execution.member_search.extractor import ExtractorChain
        orchestrator.extractor = ExtractorChain([CrashingExtractor()])
        response = orchestrator.search("u1", "AI", TENANT_A)
        assert response.members


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

class TestHistory:
    """Tests for turn recording and follow-up context."""

    def test_turn_recorded(self, orchestrator):
        response = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A, turn_id="msg-1")
        history = orchestrator.sessions.get_history("u1")
        assert len(history) == 1
        turn = history[0]
        assert turn.turn_id == "msg-1"
        assert turn.kind == "search"
        assert turn.result_summary["count"] == len(response.members)
        assert turn.result_summary["member_ids"] == _ids(response)

    def test_replayed_message_recorded_once(self, orchestrator):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A, turn_id="msg-1")
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A, turn_id="msg-1")
        assert len(orchestrator.sessions.get_history("u1")) == 1

    def test_conversational_turn_is_a_message(self, orchestrator):
        orchestrator.search("u1", "hello", TENANT_A)
        session = orchestrator.sessions.get_session("u1")
        assert session.history[0].kind == "message"
        assert session.search_counter == 0

    def test_follow_up_inherits_subject(self, orchestrator):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        response = orchestrator.search("u1", "what about in Bangalore?", TENANT_A)
        assert response.extraction["context_applied"] is True
        assert response.extraction["entities"]["skills"] == ["AI"]
        assert _ids(response) == ["a-3"]

    def test_history_is_per_user(self, orchestrator):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        response = orchestrator.search("u2", "what about in Bangalore?", TENANT_A)
        assert response.extraction["context_applied"] is False

    def test_history_keeps_arrival_order_when_requests_finish_out_of_order(self, mock_member_store):
        provider = BlockingEmbeddingProvider("chennai")
        orchestrator = build_test_orchestrator(store=mock_member_store, embedding_provider=provider)

        slow = threading.Thread(
            target=orchestrator.search,
            args=("u1", "find AI experts in Chennai", TENANT_A),
            kwargs={"turn_id": "first"},
        )
        slow.start()
        assert provider.entered.wait(timeout=5)

        orchestrator.search("u1", "find finance experts in Mumbai", TENANT_A, turn_id="second")
        assert [t.turn_id for t in orchestrator.sessions.get_history("u1")] == ["second"]

        provider.release.set()
        slow.join(timeout=5)

        history = orchestrator.sessions.get_history("u1")
        assert [t.turn_id for t in history] == ["first", "second"]
        assert [t.sequence for t in history] == [1, 2]


class TestMetrics:
    """Tests for metrics emitted per request."""

    def test_search_recorded(self, orchestrator):
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        orchestrator.search("u1", "find AI experts in Chennai", TENANT_A)
        metrics = orchestrator.metrics.get_metrics_dict()
        assert metrics["queries"]["total"] == 2
        assert metrics["routes"] == {"member_search": 2}
        assert metrics["result_cache"]["hits"] == 1
        assert metrics["result_cache"]["misses"] == 1

    def test_failure_recorded(self, orchestrator):
        from execution.member_search.errors import ValidationError
        with pytest.raises(ValidationError):
            orchestrator.search("u1", "", TENANT_A)
        metrics = orchestrator.metrics.get_metrics_dict()
        assert metrics["queries"]["failed"] == 1
        assert metrics["errors"] == {"ValidationError": 1}

    def test_response_serializes(self, orchestrator):
        data = orchestrator.search("u1", "find AI experts in Chennai", TENANT_A).to_dict()
        assert data["route"] == "member_search"
        assert isinstance(data["turn_id"], str)
        assert data["latency_ms"] >= 0
