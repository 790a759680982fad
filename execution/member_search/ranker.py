"""
Hybrid Member Ranker

Ranks tenant-scoped member candidates by blending four signals into one
score:

    score = w_v * vectorSim + w_k * keywordScore
          + w_c * profileCompleteness + w_r * recency

with the fixed weights in HYBRID_SCORE_WEIGHTS. Ordering is fully
deterministic: score descending, then name, creation time and member id
ascending.

When structured filters eliminate every candidate the ranker drops the
weakest filter and retries, marking the result as broadened.
"""

import re
import logging
from typing import Callable, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor

from .config import RankerConfig
from .extractor import Extraction
from .member_store import MemberCandidate, SearchFilters

logger = logging.getLogger(__name__)

# Background pool for fire-and-forget analytics writes
_background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ranker-bg")

_KEYWORD_STOPWORDS = {
    "find", "search", "show", "list", "looking", "look", "for", "who", "has", "have",
    "the", "and", "with", "from", "into", "any", "some", "someone", "anyone", "people",
    "members", "member", "me", "get", "need", "want", "in", "at", "of", "is", "are",
    "what", "about", "there", "please", "can", "you", "our", "community",
}


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the four ranking signals."""
    vector: float
    keyword: float
    completeness: float
    recency: float


HYBRID_SCORE_WEIGHTS = ScoreWeights(vector=0.5, keyword=0.3, completeness=0.1, recency=0.1)

COMPLETENESS_FIELDS = (
    "name", "city", "organization", "designation", "degree",
    "graduation_year", "skills", "services", "email", "phone",
)


@dataclass
class RankedMember:
    """A candidate with its final score and per-signal breakdown."""
    member: MemberCandidate
    score: float
    vector_score: float = 0.0
    keyword_score: float = 0.0
    completeness: float = 0.0
    recency: float = 0.0
    rank: int = 0

    @property
    def tenant_id(self) -> str:
        return self.member.tenant_id

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "score": self.score,
            "vector_score": self.vector_score,
            "keyword_score": self.keyword_score,
            "completeness": self.completeness,
            "recency": self.recency,
            "member": self.member.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RankedMember":
        return cls(
            member=MemberCandidate.from_dict(data["member"]),
            score=data["score"],
            vector_score=data.get("vector_score", 0.0),
            keyword_score=data.get("keyword_score", 0.0),
            completeness=data.get("completeness", 0.0),
            recency=data.get("recency", 0.0),
            rank=data.get("rank", 0),
        )


@dataclass
class RankingResult:
    """Ordered members plus how the ranking was produced."""
    members: list[RankedMember] = field(default_factory=list)
    broadened: bool = False
    dropped_filters: list[str] = field(default_factory=list)
    applied_filters: dict = field(default_factory=dict)
    used_vector: bool = False
    embedding_type: str = "profile"

    def to_dict(self) -> dict:
        return {
            "members": [m.to_dict() for m in self.members],
            "broadened": self.broadened,
            "dropped_filters": list(self.dropped_filters),
            "applied_filters": self.applied_filters,
            "used_vector": self.used_vector,
            "embedding_type": self.embedding_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RankingResult":
        return cls(
            members=[RankedMember.from_dict(m) for m in data.get("members", [])],
            broadened=data.get("broadened", False),
            dropped_filters=list(data.get("dropped_filters", [])),
            applied_filters=data.get("applied_filters", {}),
            used_vector=data.get("used_vector", False),
            embedding_type=data.get("embedding_type", "profile"),
        )


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


_LATEST = datetime.max.replace(tzinfo=timezone.utc)


class HybridRanker:
    """
    Tenant-scoped hybrid ranking over a member store.

    Usage:
        ranker = HybridRanker(member_store)
        result = ranker.rank(query_embedding, extraction, tenant_id="t1", max_results=10)
    """

    def __init__(
        self,
        store,
        config: Optional[RankerConfig] = None,
        weights: ScoreWeights = HYBRID_SCORE_WEIGHTS,
        clock: Optional[Callable[[], datetime]] = None,
        background_executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.store = store
        self.config = config or RankerConfig()
        self.weights = weights
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._background = background_executor or _background

    def clamp_max_results(self, max_results: Optional[int]) -> int:
        """Bound the requested page size to [1, ceiling]; never reject."""
        if max_results is None:
            return self.config.default_max_results
        return max(1, min(int(max_results), self.config.max_results_ceiling))

    @staticmethod
    def choose_embedding_type(extraction: Extraction) -> str:
        """Skills vector for skill queries, contextual for business lookups, profile otherwise."""
        if extraction.entities.skills:
            return "skills"
        if extraction.entities.services or extraction.search_type in ("find_business", "find_alumni_business"):
            return "contextual"
        return "profile"

    @staticmethod
    def build_keyword_query(extraction: Extraction, query_text: str = "") -> str:
        """Full-text query: extracted terms OR-ed together, else the message's content words."""
        entities = extraction.entities
        terms = list(entities.skills) + list(entities.services) + list(entities.names)
        if not terms:
            terms = [
                w for w in re.findall(r"[a-z0-9][a-z0-9+#./-]*", query_text.lower())
                if len(w) > 2 and w not in _KEYWORD_STOPWORDS
                and w not in {l.lower() for l in entities.locations}
            ]
        seen = []
        for term in terms:
            if term not in seen:
                seen.append(term)
        return " or ".join(seen)

    def rank(
        self,
        query_embedding: Optional[list[float]],
        extraction: Extraction,
        tenant_id: str,
        max_results: Optional[int] = None,
        query_text: str = "",
        model_version: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RankingResult:
        """
        Rank members of ``tenant_id`` for an extracted query.

        Raises:
            DataStoreError: the member store round trip failed
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        limit = self.clamp_max_results(max_results)
        embedding_type = self.choose_embedding_type(extraction)
        keyword_query = self.build_keyword_query(extraction, query_text)
        original_filters = SearchFilters.from_entities(extraction.entities)
        filters = original_filters
        timeout = timeout if timeout is not None else self.config.datastore_timeout_seconds

        def _fetch(active_filters: SearchFilters) -> list[MemberCandidate]:
            return self.store.search_candidates(
                tenant_id=tenant_id,
                filters=active_filters,
                query_embedding=query_embedding,
                embedding_type=embedding_type,
                keyword_query=keyword_query,
                model_version=model_version,
                limit=self.config.candidate_pool_size,
                timeout=timeout,
            )

        candidates = _fetch(filters)
        dropped: list[str] = []

        if not candidates:
            self._log_zero_result(tenant_id, query_text, original_filters.to_dict())

        while not candidates and not filters.is_empty():
            weakest = filters.active()[0]
            filters = filters.without(weakest)
            dropped.append(weakest)
            candidates = _fetch(filters)

        if dropped:
            logger.warning(f"Broadened search for tenant {tenant_id}: dropped {dropped}")

        scoped = [c for c in candidates if c.tenant_id == tenant_id]
        if len(scoped) != len(candidates):
            logger.error(
                f"Dropped {len(candidates) - len(scoped)} rows from other tenants "
                f"while ranking for tenant {tenant_id}"
            )

        use_vector = query_embedding is not None
        scored = self._score(scoped, use_vector, model_version)
        scored.sort(key=self._sort_key)

        top = scored[:limit]
        for i, ranked in enumerate(top, 1):
            ranked.rank = i

        return RankingResult(
            members=top,
            broadened=bool(dropped),
            dropped_filters=dropped,
            applied_filters=filters.to_dict(),
            used_vector=use_vector,
            embedding_type=embedding_type,
        )

    def combine(self, vector_score: float, keyword_score: float, completeness: float, recency: float) -> float:
        w = self.weights
        return round(
            w.vector * vector_score
            + w.keyword * keyword_score
            + w.completeness * completeness
            + w.recency * recency,
            6,
        )

    def _score(self, candidates: list[MemberCandidate], use_vector: bool, model_version: Optional[str]) -> list[RankedMember]:
        max_rank = max((c.keyword_rank for c in candidates), default=0.0)
        now = self._clock()

        ranked = []
        for candidate in candidates:
            vector_score = 0.0
            if use_vector and candidate.vector_similarity is not None:
                if model_version is None or candidate.model_version in (None, model_version):
                    vector_score = max(0.0, min(1.0, candidate.vector_similarity))

            keyword_score = candidate.keyword_rank / max_rank if max_rank > 0 else 0.0
            completeness = self.profile_completeness(candidate)
            recency = self.recency_score(candidate, now)

            ranked.append(RankedMember(
                member=candidate,
                score=self.combine(vector_score, keyword_score, completeness, recency),
                vector_score=round(vector_score, 6),
                keyword_score=round(keyword_score, 6),
                completeness=round(completeness, 6),
                recency=round(recency, 6),
            ))
        return ranked

    @staticmethod
    def profile_completeness(candidate: MemberCandidate) -> float:
        fields = candidate.profile_fields()
        filled = sum(1 for name in COMPLETENESS_FIELDS if fields.get(name) not in (None, "", []))
        return filled / len(COMPLETENESS_FIELDS)

    def recency_score(self, candidate: MemberCandidate, now: datetime) -> float:
        ts = _utc(candidate.updated_at or candidate.created_at)
        if ts is None:
            return 0.0
        age_days = max(0.0, (_utc(now) - ts).total_seconds() / 86400)
        return 0.5 ** (age_days / self.config.recency_half_life_days)

    @staticmethod
    def _sort_key(ranked: RankedMember):
        member = ranked.member
        return (
            -ranked.score,
            member.name.casefold(),
            _utc(member.created_at) or _LATEST,
            member.member_id,
        )

    def _log_zero_result(self, tenant_id: str, query_text: str, filters: dict) -> None:
        log = getattr(self.store, "log_zero_result", None)
        if log is None:
            return

        def _write():
            try:
                log(tenant_id, query_text, filters)
            except Exception as e:
                logger.warning(f"Zero-result logging failed for tenant {tenant_id}: {e}")

        logger.info(f"Zero results for tenant {tenant_id}: {query_text[:80]!r} {filters}")
        self._background.submit(_write)
