"""
Query Orchestrator

Sequences one inbound message through the pipeline under a single request
deadline:

    message rate check -> validation -> session (arrival sequence) -> extraction
        -> follow-up context -> route
        -> (search rate check -> result cache -> embedding -> ranking)
        -> format -> history

Only the member-search route draws on the search quota.

Only DataStoreError, RateLimitExceeded and ValidationError escape
search(); provider failures and cache outages degrade the answer instead.
handle_message() turns every outcome into channel text.
"""

import time
import uuid
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field

from .config import MemberSearchConfig
from .conversation import build_conversation_context, resolve_follow_up
from .errors import (
    DataStoreError,
    ProviderError,
    RateLimitExceeded,
    SessionUnavailable,
    ValidationError,
)
from .extractor import (
    CONVERSATIONAL,
    DOCUMENT_QA,
    MEMBER_SEARCH,
    UNKNOWN,
    Extraction,
    ExtractionContext,
    normalize_text,
)
from .metrics import MetricsCollector, get_metrics_collector
from .ranker import RankingResult
from .response_formatter import ResponseFormatter
from .retry import Deadline
from .session_store import MESSAGE, SEARCH, SessionStore, Turn

logger = logging.getLogger(__name__)

ROUTE_MEMBER_SEARCH = "member_search"
ROUTE_DOCUMENT = "document_qa"
ROUTE_CONVERSATIONAL = "conversational"


@dataclass
class SearchResponse:
    """Outcome of one message, ready for the channel."""
    text: str
    intent: str
    route: str
    extraction: dict = field(default_factory=dict)
    members: list[dict] = field(default_factory=list)
    broadened: bool = False
    dropped_filters: list[str] = field(default_factory=list)
    degraded: bool = False
    keyword_only: bool = False
    notes: list[str] = field(default_factory=list)
    cache_hit: bool = False
    latency_ms: float = 0.0
    suggestions: list[str] = field(default_factory=list)
    turn_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "intent": self.intent,
            "route": self.route,
            "extraction": self.extraction,
            "members": self.members,
            "broadened": self.broadened,
            "dropped_filters": list(self.dropped_filters),
            "degraded": self.degraded,
            "keyword_only": self.keyword_only,
            "notes": list(self.notes),
            "cache_hit": self.cache_hit,
            "latency_ms": round(self.latency_ms, 2),
            "suggestions": list(self.suggestions),
            "turn_id": self.turn_id,
        }


class QueryOrchestrator:
    """
    Per-request pipeline.

    Usage:
        orchestrator = build_orchestrator()
        response = orchestrator.search("user-1", "find AI experts in Chennai", tenant_id="t1")
        print(response.text)
    """

    def __init__(
        self,
        sessions: SessionStore,
        extractor,
        embeddings,
        ranker,
        result_cache,
        config: Optional[MemberSearchConfig] = None,
        formatter: Optional[ResponseFormatter] = None,
        metrics: Optional[MetricsCollector] = None,
        document_handler: Optional[Callable[[str, str], str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sessions = sessions
        self.extractor = extractor
        self.embeddings = embeddings
        self.ranker = ranker
        self.result_cache = result_cache
        self.config = config or MemberSearchConfig()
        self.formatter = formatter or ResponseFormatter()
        self.metrics = metrics or get_metrics_collector()
        self.document_handler = document_handler
        self._clock = clock

    # =========================================================================
    # Entry points
    # =========================================================================

    def validate(self, text: Optional[str]) -> str:
        """
        Raises:
            ValidationError: empty or longer than max_query_length
        """
        normalized = normalize_text(text or "")
        if not normalized:
            raise ValidationError("Your message was empty.")
        limit = self.config.orchestrator.max_query_length
        if len(normalized) > limit:
            raise ValidationError(f"Your message is too long ({len(normalized)} characters, max {limit}).")
        return normalized

    def search(
        self,
        sender_id: str,
        text: str,
        tenant_id: str,
        max_results: Optional[int] = None,
        turn_id: Optional[str] = None,
    ) -> SearchResponse:
        """
        Answer one message.

        Raises:
            RateLimitExceeded: message window full (nothing else ran), or
                search window full (the store was not queried, history untouched)
            ValidationError: empty/oversized text or missing ids
            DataStoreError: member data or session store unreachable
        """
        if not sender_id or not tenant_id:
            raise ValidationError("sender_id and tenant_id are required.")

        started = self._clock()
        deadline = Deadline(self.config.orchestrator.request_deadline_seconds, clock=self._clock)

        with self.metrics.track_query(tenant_id, text or "") as tracker:
            self._enforce(sender_id, MESSAGE)
            normalized = self.validate(text)

            session = self._session_call(
                lambda: self.sessions.get_or_create_session(sender_id, tenant_id, reserve_turn=True)
            )
            history = session.history
            sequence = session.next_sequence

            context = ExtractionContext(
                tenant_id=tenant_id,
                history=build_conversation_context(
                    history, limit=self.config.extractor.history_context_turns
                ),
                default_turnover_unit=self.config.extractor.default_turnover_unit,
            )
            extraction = self.extractor.extract(normalized, context=context, deadline=deadline)
            extraction = resolve_follow_up(extraction, history, normalized)

            if extraction.intent == CONVERSATIONAL:
                response = SearchResponse(
                    text=self.formatter.conversational(normalized),
                    intent=extraction.intent,
                    route=ROUTE_CONVERSATIONAL,
                    extraction=extraction.to_dict(),
                )
            elif extraction.intent == DOCUMENT_QA:
                response = self._answer_document(normalized, tenant_id, extraction)
            else:
                self._enforce(sender_id, SEARCH)
                response = self._search_members(normalized, tenant_id, extraction, max_results, deadline)

            response.turn_id = turn_id or uuid.uuid4().hex
            response.latency_ms = (self._clock() - started) * 1000
            tracker.set_results(
                len(response.members),
                intent=response.intent,
                route=response.route,
                cache_hit=response.cache_hit,
                slow_path=extraction.method == "llm" or extraction.degraded,
                degraded_extraction=extraction.degraded,
                keyword_only=response.keyword_only,
                broadened=response.broadened,
            )

        self._record_turn(sender_id, tenant_id, normalized, extraction, response, sequence)

        logger.info(
            f"Answered {sender_id} in tenant {tenant_id}: route={response.route} "
            f"members={len(response.members)} cache_hit={response.cache_hit} "
            f"degraded={response.degraded} latency={response.latency_ms:.0f}ms"
        )
        return response

    def handle_message(
        self,
        sender_id: str,
        text: str,
        tenant_id: str,
        max_results: Optional[int] = None,
        turn_id: Optional[str] = None,
    ) -> str:
        """Channel entry point: always returns text."""
        try:
            return self.search(sender_id, text, tenant_id, max_results=max_results, turn_id=turn_id).text
        except RateLimitExceeded as e:
            return self.formatter.rate_limited(e)
        except ValidationError as e:
            return self.formatter.validation_error(e)
        except SessionUnavailable:
            return self.formatter.session_unavailable()
        except DataStoreError:
            return self.formatter.data_store_error()

    def invalidate_tenant(self, tenant_id: str) -> int:
        """Called by the ingestion layer after member or embedding changes."""
        return self.result_cache.invalidate_tenant(tenant_id)

    # =========================================================================
    # Sessions and rate limits
    # =========================================================================

    def _session_call(self, operation):
        try:
            return operation()
        except SessionUnavailable:
            raise
        except DataStoreError as e:
            raise SessionUnavailable(f"Session store unavailable: {e.message}", cause=e)

    def _enforce(self, sender_id: str, category: str) -> None:
        try:
            self._session_call(lambda: self.sessions.enforce(sender_id, category))
        except RateLimitExceeded:
            self.metrics.record_rate_limited(category)
            raise

    def _record_turn(
        self,
        sender_id: str,
        tenant_id: str,
        normalized: str,
        extraction: Extraction,
        response: SearchResponse,
        sequence: int = 0,
    ) -> None:
        turn = Turn(
            turn_id=response.turn_id,
            query_text=normalized,
            extraction=extraction.to_dict(),
            result_summary={
                "count": len(response.members),
                "member_ids": [m["member"]["member_id"] for m in response.members[:10]],
                "broadened": response.broadened,
            },
            kind=SEARCH if response.route == ROUTE_MEMBER_SEARCH else MESSAGE,
            sequence=sequence,
        )
        try:
            self.sessions.append_history(sender_id, turn, tenant_id=tenant_id)
        except DataStoreError as e:
            # The answer is already computed; losing one history entry is tolerable
            logger.warning(f"Could not record turn {turn.turn_id} for {sender_id}: {e}")

    # =========================================================================
    # Routes
    # =========================================================================

    def _answer_document(self, normalized: str, tenant_id: str, extraction: Extraction) -> SearchResponse:
        if self.document_handler is not None:
            text = self.document_handler(normalized, tenant_id)
        else:
            text = self.formatter.document_redirect()
        return SearchResponse(
            text=text,
            intent=extraction.intent,
            route=ROUTE_DOCUMENT,
            extraction=extraction.to_dict(),
        )

    @staticmethod
    def _embedding_text(extraction: Extraction, normalized: str) -> str:
        """Follow-ups are embedded by their inherited subject, not their literal text."""
        if extraction.context_applied:
            terms = extraction.entities.skills + extraction.entities.services
            if terms:
                return " ".join(terms)
        return normalized

    def _embed(self, text: str, deadline: Deadline) -> Optional[list[float]]:
        """Query vector, or None when embedding must be skipped."""
        cfg = self.config
        if deadline.remaining() < cfg.orchestrator.min_embedding_budget_seconds:
            logger.warning("Skipping query embedding: request deadline nearly exhausted")
            return None
        try:
            return self.embeddings.embed(
                text,
                cfg.embedding.model_version,
                deadline=deadline,
                timeout=cfg.embedding.timeout_seconds,
            )
        except ProviderError as e:
            logger.warning(f"Embedding unavailable, ranking keyword-only: {e.message}")
            return None

    def _search_members(
        self,
        normalized: str,
        tenant_id: str,
        extraction: Extraction,
        max_results: Optional[int],
        deadline: Deadline,
    ) -> SearchResponse:
        limit = self.ranker.clamp_max_results(max_results)
        cfg = self.config

        def _compute() -> dict:
            vector = self._embed(self._embedding_text(extraction, normalized), deadline)
            timeout = max(
                deadline.cap(cfg.ranker.datastore_timeout_seconds),
                cfg.orchestrator.min_datastore_budget_seconds,
            )
            ranking = self.ranker.rank(
                vector,
                extraction,
                tenant_id,
                max_results=limit,
                query_text=normalized,
                model_version=cfg.embedding.model_version,
                timeout=timeout,
            )
            return {"ranking": ranking.to_dict(), "keyword_only": vector is None}

        key_parts = {
            "query": normalized,
            "filters": {
                "entities": extraction.entities.to_dict(),
                "search_type": extraction.search_type,
            },
            "tenant_id": tenant_id,
            "max_results": limit,
        }
        payload, cache_hit = self.result_cache.get_or_compute(
            key_parts,
            _compute,
            should_cache=lambda p: not p["keyword_only"],
        )

        ranking = RankingResult.from_dict(payload["ranking"])
        members = [m for m in ranking.members if m.tenant_id == tenant_id]
        if len(members) != len(ranking.members):
            logger.error(f"Dropped foreign-tenant rows from a response for tenant {tenant_id}")

        keyword_only = payload["keyword_only"]
        degraded = keyword_only or extraction.degraded

        notes = []
        if ranking.broadened:
            notes.append(self.formatter.broadened_note(ranking.dropped_filters))
        if degraded:
            notes.append(self.formatter.degraded_note())

        text = self.formatter.format_results(members, extraction)
        if notes:
            text = "\n\n".join([text, *notes])

        if members:
            suggestions = self.formatter.follow_up_suggestions(members, extraction)
        else:
            suggestions = self.formatter.empty_result_suggestions(extraction)

        intent = extraction.intent if extraction.intent != UNKNOWN else MEMBER_SEARCH
        return SearchResponse(
            text=text,
            intent=intent,
            route=ROUTE_MEMBER_SEARCH,
            extraction=extraction.to_dict(),
            members=[m.to_dict() for m in members],
            broadened=ranking.broadened,
            dropped_filters=ranking.dropped_filters,
            degraded=degraded,
            keyword_only=keyword_only,
            notes=notes,
            cache_hit=cache_hit,
            suggestions=suggestions,
        )


def build_orchestrator(
    config: Optional[MemberSearchConfig] = None,
    member_store=None,
    kv_store=None,
    extraction_provider=None,
    embedding_provider=None,
) -> QueryOrchestrator:
    """
    Wire the production pipeline from config, building any collaborator
    not passed in.
    """
    from .db import PostgresConnectionManager
    from .embeddings import EmbeddingCache, get_embedding_provider_chain
    from .extractor import build_extractor_chain
    from .kv_store import get_kv_store
    from .llm_provider import get_extraction_provider
    from .member_store import MemberStore
    from .ranker import HybridRanker
    from .result_cache import ResultCache

    config = config or MemberSearchConfig.from_env()

    db = None
    if member_store is None or (kv_store is None and config.session.kv_backend == "postgres"):
        db = PostgresConnectionManager(
            connection_string=config.store.connection_string,
            min_connections=config.store.pool_min_connections,
            max_connections=config.store.pool_max_connections,
        )
    if member_store is None:
        member_store = MemberStore(config.store, db=db)
    if kv_store is None:
        kv_store = get_kv_store(config.session.kv_backend, db=db)
    if extraction_provider is None:
        extraction_provider = get_extraction_provider()
    if embedding_provider is None:
        embedding_provider = get_embedding_provider_chain(config.embedding)

    return QueryOrchestrator(
        sessions=SessionStore(kv_store, config.session),
        extractor=build_extractor_chain(extraction_provider, config.extractor),
        embeddings=EmbeddingCache(
            embedding_provider,
            ttl_seconds=config.embedding.cache_ttl_seconds,
            max_size=config.embedding.cache_max_size,
        ),
        ranker=HybridRanker(member_store, config.ranker),
        result_cache=ResultCache(kv_store, config.cache),
        config=config,
    )


# CLI for testing
if __name__ == "__main__":
    import sys

    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    tenant = sys.argv[1] if len(sys.argv) > 1 else "demo"
    query = " ".join(sys.argv[2:]) or "find AI experts in Chennai"

    orchestrator = build_orchestrator()
    print(orchestrator.handle_message("cli-user", query, tenant))
