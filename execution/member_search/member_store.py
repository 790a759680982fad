"""
Tenant Member Store with PostgreSQL + pgvector

Read-only candidate search over member profiles and their embeddings.
Combines nearest-neighbor vector similarity and full-text ranking in one
round trip, always scoped to a single tenant.

Tables (owned by the ingestion layer):
    members(id, tenant_id, name, member_type, city, organization, designation,
            degree, graduation_year, annual_turnover, skills, services,
            email, phone, created_at, updated_at)
    member_embeddings(member_id, tenant_id, model_version, profile_embedding,
            skills_embedding, contextual_embedding, search_vector,
            profile_text_length, skills_text_length, contextual_text_length)

Only search_zero_results is created here.
"""

import json
import logging
from typing import Optional
from datetime import datetime
from dataclasses import dataclass, field, replace

from .config import MemberStoreConfig
from .db import PostgresConnectionManager
from .extractor import Entities, NumericRange

logger = logging.getLogger(__name__)

EMBEDDING_COLUMNS = {
    "profile": "profile_embedding",
    "skills": "skills_embedding",
    "contextual": "contextual_embedding",
}


@dataclass
class SearchFilters:
    """Structured filters: AND across fields, OR within a field."""
    cities: list[str] = field(default_factory=list)
    degree: Optional[str] = None
    year_range: Optional[NumericRange] = None
    turnover_range: Optional[NumericRange] = None
    member_type: Optional[str] = None

    # Weakest discriminator first; broadening drops filters in this order
    DROP_ORDER = ("turnover_range", "year_range", "degree", "member_type", "cities")

    @classmethod
    def from_entities(cls, entities: Entities) -> "SearchFilters":
        return cls(
            cities=list(entities.locations),
            degree=entities.degree,
            year_range=entities.year_range,
            turnover_range=entities.turnover_range,
            member_type=entities.member_type,
        )

    def active(self) -> list[str]:
        """Names of populated filters, in drop order."""
        return [name for name in self.DROP_ORDER if getattr(self, name)]

    def is_empty(self) -> bool:
        return not self.active()

    def without(self, name: str) -> "SearchFilters":
        return replace(self, **{name: [] if name == "cities" else None})

    def to_dict(self) -> dict:
        data = {}
        if self.cities:
            data["cities"] = sorted(self.cities)
        if self.degree:
            data["degree"] = self.degree
        if self.year_range:
            data["year_range"] = self.year_range.to_dict()
        if self.turnover_range:
            data["turnover_range"] = self.turnover_range.to_dict()
        if self.member_type:
            data["member_type"] = self.member_type
        return data

    def matches(self, candidate: "MemberCandidate") -> bool:
        """Evaluate the filters in Python, mirroring the SQL predicates."""
        if self.cities:
            city = (candidate.city or "").lower()
            if city not in {c.lower() for c in self.cities}:
                return False
        if self.degree and self.degree.lower() not in (candidate.degree or "").lower():
            return False
        if self.member_type and candidate.member_type != self.member_type:
            return False
        if self.year_range and not _in_range(candidate.graduation_year, self.year_range):
            return False
        if self.turnover_range and not _in_range(candidate.annual_turnover, self.turnover_range):
            return False
        return True


def _in_range(value, bounds: NumericRange) -> bool:
    if value is None:
        return False
    if bounds.min is not None and value < bounds.min:
        return False
    if bounds.max is not None and value > bounds.max:
        return False
    return True


@dataclass
class MemberCandidate:
    """A member row returned by candidate search, with raw relevance signals."""
    member_id: str
    tenant_id: str
    name: str
    member_type: str = "generic"
    city: Optional[str] = None
    organization: Optional[str] = None
    designation: Optional[str] = None
    degree: Optional[str] = None
    graduation_year: Optional[int] = None
    annual_turnover: Optional[float] = None
    skills: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_version: Optional[str] = None
    vector_similarity: Optional[float] = None  # 1 - cosine distance, None when not computed
    keyword_rank: float = 0.0  # Raw ts_rank

    @classmethod
    def from_row(cls, row: dict) -> "MemberCandidate":
        similarity = row.get("vector_similarity")
        turnover = row.get("annual_turnover")
        return cls(
            member_id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            name=row.get("name") or "",
            member_type=row.get("member_type") or "generic",
            city=row.get("city"),
            organization=row.get("organization"),
            designation=row.get("designation"),
            degree=row.get("degree"),
            graduation_year=row.get("graduation_year"),
            annual_turnover=float(turnover) if turnover is not None else None,
            skills=list(row.get("skills") or []),
            services=list(row.get("services") or []),
            email=row.get("email"),
            phone=row.get("phone"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            model_version=row.get("model_version"),
            vector_similarity=float(similarity) if similarity is not None else None,
            keyword_rank=float(row.get("keyword_rank") or 0.0),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "MemberCandidate":
        """Inverse of to_dict(), used when reading cached responses."""
        def _ts(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            member_id=data["member_id"],
            tenant_id=data["tenant_id"],
            name=data.get("name") or "",
            member_type=data.get("member_type") or "generic",
            city=data.get("city"),
            organization=data.get("organization"),
            designation=data.get("designation"),
            degree=data.get("degree"),
            graduation_year=data.get("graduation_year"),
            annual_turnover=data.get("annual_turnover"),
            skills=list(data.get("skills") or []),
            services=list(data.get("services") or []),
            email=data.get("email"),
            phone=data.get("phone"),
            created_at=_ts(data.get("created_at")),
            updated_at=_ts(data.get("updated_at")),
        )

    def profile_fields(self) -> dict:
        return {
            "name": self.name,
            "city": self.city,
            "organization": self.organization,
            "designation": self.designation,
            "degree": self.degree,
            "graduation_year": self.graduation_year,
            "skills": self.skills,
            "services": self.services,
            "email": self.email,
            "phone": self.phone,
        }

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "member_type": self.member_type,
            "city": self.city,
            "organization": self.organization,
            "designation": self.designation,
            "degree": self.degree,
            "graduation_year": self.graduation_year,
            "annual_turnover": self.annual_turnover,
            "skills": list(self.skills),
            "services": list(self.services),
            "email": self.email,
            "phone": self.phone,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class MemberStore:
    """
    PostgreSQL member store with pgvector.

    Features:
    - Cosine similarity on the profile, skills or contextual embedding
    - Full-text ranking with websearch_to_tsquery
    - Tenant predicate on every query plus RLS tenant context
    - Statement timeout per round trip
    """

    def __init__(self, config: Optional[MemberStoreConfig] = None, db: Optional[PostgresConnectionManager] = None):
        self.config = config or MemberStoreConfig()
        self._db = db or PostgresConnectionManager(
            connection_string=self.config.connection_string,
            min_connections=self.config.pool_min_connections,
            max_connections=self.config.pool_max_connections,
        )

    @property
    def db(self) -> PostgresConnectionManager:
        return self._db

    def connect(self) -> None:
        self._db.connect()

    def close(self) -> None:
        self._db.close()

    def health_check(self) -> bool:
        return self._db.health_check()

    def initialize_schema(self) -> None:
        """Create the zero-result analytics table."""
        def _create(conn):
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS search_zero_results (
                        id BIGSERIAL PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        query_text TEXT NOT NULL,
                        filters JSONB NOT NULL DEFAULT '{}'::jsonb,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                """)
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_zero_results_tenant "
                    "ON search_zero_results (tenant_id, created_at)"
                )
            conn.commit()

        self._db.execute_with_retry(_create, label="initialize_schema")
        logger.info("Member store schema initialized")

    def _build_filters(self, filters: SearchFilters) -> tuple[list[str], list]:
        clauses = []
        params = []

        if filters.cities:
            clauses.append("m.city ILIKE ANY(%s)")
            params.append(list(filters.cities))
        if filters.degree:
            clauses.append("m.degree ILIKE %s")
            params.append(f"%{filters.degree}%")
        if filters.member_type:
            clauses.append("m.member_type = %s")
            params.append(filters.member_type)
        if filters.year_range:
            if filters.year_range.min is not None:
                clauses.append("m.graduation_year >= %s")
                params.append(filters.year_range.min)
            if filters.year_range.max is not None:
                clauses.append("m.graduation_year <= %s")
                params.append(filters.year_range.max)
        if filters.turnover_range:
            if filters.turnover_range.min is not None:
                clauses.append("m.annual_turnover >= %s")
                params.append(filters.turnover_range.min)
            if filters.turnover_range.max is not None:
                clauses.append("m.annual_turnover <= %s")
                params.append(filters.turnover_range.max)

        return clauses, params

    def search_candidates(
        self,
        tenant_id: str,
        filters: SearchFilters,
        query_embedding: Optional[list[float]] = None,
        embedding_type: str = "profile",
        keyword_query: Optional[str] = None,
        model_version: Optional[str] = None,
        limit: int = 200,
        timeout: Optional[float] = None,
    ) -> list[MemberCandidate]:
        """
        Fetch tenant-scoped candidates with raw similarity and keyword rank.

        Args:
            tenant_id: Required tenant scope
            filters: Structured filters
            query_embedding: Query vector; omitted for keyword-only ranking
            embedding_type: "profile", "skills" or "contextual"
            keyword_query: Text for full-text ranking
            model_version: Embedding model version to join on
            limit: Candidate pool size
            timeout: Statement timeout in seconds

        Raises:
            DataStoreError: on any database failure or timeout
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        column = EMBEDDING_COLUMNS.get(embedding_type, EMBEDDING_COLUMNS["profile"])
        select_params: list = []

        if query_embedding is not None:
            vector_expr = f"1 - (e.{column} <=> %s::vector)"
            select_params.append(str(list(query_embedding)))
        else:
            vector_expr = "NULL::float"

        if keyword_query:
            keyword_expr = "COALESCE(ts_rank(e.search_vector, websearch_to_tsquery(%s, %s)), 0)"
            select_params.extend([self.config.fts_language, keyword_query])
        else:
            keyword_expr = "0::float"

        join_params = [model_version]
        filter_clauses, filter_params = self._build_filters(filters)
        where = " AND ".join(["m.tenant_id = %s"] + filter_clauses)

        sql = f"""
        SELECT
            m.id, m.tenant_id, m.name, m.member_type, m.city, m.organization,
            m.designation, m.degree, m.graduation_year, m.annual_turnover,
            m.skills, m.services, m.email, m.phone, m.created_at, m.updated_at,
            e.model_version,
            {vector_expr} AS vector_similarity,
            {keyword_expr} AS keyword_rank
        FROM {self.config.members_table} m
        LEFT JOIN {self.config.embeddings_table} e
            ON e.member_id = m.id
            AND e.tenant_id = m.tenant_id
            AND e.model_version = %s
        WHERE {where}
        ORDER BY vector_similarity DESC NULLS LAST, keyword_rank DESC, m.id
        LIMIT %s
        """
        params = select_params + join_params + [tenant_id] + filter_params + [limit]

        def _search(conn):
            with conn.cursor() as cur:
                if timeout is not None:
                    cur.execute("SET LOCAL statement_timeout = %s", (max(1, int(timeout * 1000)),))
                cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return rows

        rows = self._db.execute_with_retry(_search, label="search_candidates")
        return [MemberCandidate.from_row(dict(row)) for row in rows]

    def log_zero_result(self, tenant_id: str, query_text: str, filters: dict) -> None:
        """Record a query that matched nothing, for analytics."""
        def _insert(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO search_zero_results (tenant_id, query_text, filters) "
                    "VALUES (%s, %s, %s::jsonb)",
                    (tenant_id, query_text[:500], json.dumps(filters, default=str)),
                )
            conn.commit()

        self._db.execute_with_retry(_insert, label="log_zero_result")
