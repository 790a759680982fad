"""
Intent and Entity Extraction for Member Search

Turns a free-text message into an Extraction: an intent, structured
filters (location, skills, services, degree, year and turnover ranges) and
a confidence score.

Architecture:
    PatternExtractor -- fast path, deterministic regex/gazetteer matching
    LLMExtractor     -- slow path, structured-output provider call
    ExtractorChain   -- runs the chain, consulting later extractors only
                        while confidence stays below the threshold
"""

import re
import logging
from datetime import date
from typing import Optional
from dataclasses import dataclass, field, replace

from .config import ExtractorConfig
from .errors import ExtractionDegraded, ProviderError
from .retry import Deadline, RetryPolicy
from .extraction_patterns import (
    INTENT_PATTERNS,
    SEARCH_TYPE_PATTERNS,
    ALUMNI_BUSINESS_PATTERNS,
    NAME_PATTERN,
    CITIES,
    LOCATION_ALIASES,
    SKILL_KEYWORDS,
    CASE_SENSITIVE_SKILLS,
    SERVICE_KEYWORDS,
    SERVICE_PATTERN,
    SERVICE_STOPWORDS,
    DEGREE_KEYWORDS,
    DEGREE_PATTERNS,
    MEMBER_TYPE_PATTERNS,
    YEAR_RANGE_PATTERN,
    YEAR_AFTER_PATTERN,
    YEAR_BEFORE_PATTERN,
    YEAR_BATCH_PATTERNS,
    BARE_YEAR_PATTERN,
    MIN_GRADUATION_YEAR,
    TURNOVER_UNITS,
    TURNOVER_BETWEEN_PATTERN,
    TURNOVER_MIN_PATTERN,
    TURNOVER_MAX_PATTERN,
    TURNOVER_BUCKET_PATTERNS,
    TURNOVER_CONTEXT_PATTERN,
    TURNOVER_BUCKETS,
    EXTRACTION_SCHEMA,
)

logger = logging.getLogger(__name__)

MEMBER_SEARCH = "member_search"
DOCUMENT_QA = "document_qa"
HYBRID = "hybrid"
CONVERSATIONAL = "conversational"
UNKNOWN = "unknown"

VALID_INTENTS = (MEMBER_SEARCH, DOCUMENT_QA, HYBRID, CONVERSATIONAL)
SEARCH_INTENTS = (MEMBER_SEARCH, HYBRID)
SEARCH_TYPES = ("find_business", "find_peers", "find_person", "find_alumni_business", "general")
MEMBER_TYPES = ("alumni", "entrepreneur", "resident", "generic")


def normalize_text(text: str) -> str:
    """Trim and collapse whitespace. Case is kept for acronym matching."""
    return re.sub(r"\s+", " ", (text or "").strip())


def _clip(value: float) -> float:
    return round(max(0.0, min(1.0, value)), 4)


# =============================================================================
# Data types
# =============================================================================

@dataclass
class NumericRange:
    """Inclusive numeric range; either bound may be open."""
    min: Optional[float] = None
    max: Optional[float] = None

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max}

    @classmethod
    def from_dict(cls, data) -> Optional["NumericRange"]:
        if not isinstance(data, dict):
            return None
        low, high = data.get("min"), data.get("max")
        try:
            low = None if low is None else _as_number(low)
            high = None if high is None else _as_number(high)
        except (TypeError, ValueError):
            return None
        if low is None and high is None:
            return None
        if low is not None and high is not None and low > high:
            low, high = high, low
        return cls(min=low, max=high)


def _as_number(value):
    number = float(value)
    return int(number) if number.is_integer() else number


@dataclass
class Entities:
    """Structured filters pulled out of a message."""
    locations: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    degree: Optional[str] = None
    year_range: Optional[NumericRange] = None
    turnover_range: Optional[NumericRange] = None
    member_type: Optional[str] = None
    names: list[str] = field(default_factory=list)

    @property
    def location(self) -> Optional[str]:
        return self.locations[0] if self.locations else None

    def field_count(self) -> int:
        """Number of entity fields that carry a value."""
        return sum(1 for value in (
            self.locations, self.skills, self.services, self.degree,
            self.year_range, self.turnover_range, self.member_type, self.names,
        ) if value)

    def is_empty(self) -> bool:
        return self.field_count() == 0

    def to_dict(self) -> dict:
        """Only populated fields are emitted."""
        data = {}
        if self.locations:
            data["location"] = self.locations[0]
            data["locations"] = list(self.locations)
        if self.skills:
            data["skills"] = list(self.skills)
        if self.services:
            data["services"] = list(self.services)
        if self.degree:
            data["degree"] = self.degree
        if self.year_range:
            data["year_range"] = self.year_range.to_dict()
        if self.turnover_range:
            data["turnover_range"] = self.turnover_range.to_dict()
        if self.member_type:
            data["member_type"] = self.member_type
        if self.names:
            data["names"] = list(self.names)
        return data

    @classmethod
    def from_dict(cls, data) -> "Entities":
        """Tolerant parser for provider output and stored history."""
        if not isinstance(data, dict):
            return cls()

        def _str_list(value) -> list[str]:
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, list):
                return []
            return [v.strip() for v in value if isinstance(v, str) and v.strip()]

        locations = _str_list(data.get("locations"))
        if not locations:
            locations = _str_list(data.get("location"))

        member_type = data.get("member_type")
        if member_type not in MEMBER_TYPES:
            member_type = None

        degree = data.get("degree")
        degree = degree.strip() if isinstance(degree, str) and degree.strip() else None

        return cls(
            locations=locations,
            skills=_str_list(data.get("skills")),
            services=_str_list(data.get("services")),
            degree=degree,
            year_range=NumericRange.from_dict(data.get("year_range")),
            turnover_range=NumericRange.from_dict(data.get("turnover_range")),
            member_type=member_type,
            names=_str_list(data.get("names")),
        )

    def merged_with(self, override: "Entities") -> "Entities":
        """Return a copy where populated fields of ``override`` win."""
        return Entities(
            locations=override.locations or self.locations,
            skills=override.skills or self.skills,
            services=override.services or self.services,
            degree=override.degree or self.degree,
            year_range=override.year_range or self.year_range,
            turnover_range=override.turnover_range or self.turnover_range,
            member_type=override.member_type or self.member_type,
            names=override.names or self.names,
        )


@dataclass
class Extraction:
    """Result of extracting one message."""
    intent: str
    entities: Entities
    confidence: float
    method: str = "regex"
    search_type: str = "general"
    low_confidence_fields: list[str] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None
    context_applied: bool = False

    @classmethod
    def unknown(cls) -> "Extraction":
        return cls(intent=UNKNOWN, entities=Entities(), confidence=0.0)

    def to_dict(self) -> dict:
        return {
            "intent": self.intent,
            "entities": self.entities.to_dict(),
            "confidence": self.confidence,
            "method": self.method,
            "search_type": self.search_type,
            "low_confidence_fields": list(self.low_confidence_fields),
            "degraded": self.degraded,
            "context_applied": self.context_applied,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Extraction":
        return cls(
            intent=data.get("intent", UNKNOWN),
            entities=Entities.from_dict(data.get("entities", {})),
            confidence=float(data.get("confidence", 0.0)),
            method=data.get("method", "regex"),
            search_type=data.get("search_type", "general"),
            low_confidence_fields=list(data.get("low_confidence_fields", [])),
            degraded=bool(data.get("degraded", False)),
            context_applied=bool(data.get("context_applied", False)),
        )


@dataclass
class ExtractionContext:
    """Per-request context handed to every extractor."""
    tenant_id: Optional[str] = None
    history: list[str] = field(default_factory=list)  # Rendered prior turns, oldest first
    default_turnover_unit: Optional[str] = None


# =============================================================================
# Fast path
# =============================================================================

class PatternExtractor:
    """
    Deterministic regex/gazetteer extractor.

    Pure function of its input: the same text always yields the same
    intent, entities and confidence.
    """

    method = "regex"

    def __init__(self, config: Optional[ExtractorConfig] = None, current_year: Optional[int] = None):
        self.config = config or ExtractorConfig()
        self._current_year = current_year or date.today().year

        self._intent_patterns = {
            family: {
                group: [re.compile(p, re.IGNORECASE) for p in patterns]
                for group, patterns in groups.items()
            }
            for family, groups in INTENT_PATTERNS.items()
        }
        self._search_type_patterns = [
            (name, [re.compile(p, re.IGNORECASE) for p in patterns])
            for name, patterns in SEARCH_TYPE_PATTERNS
        ]
        self._alumni_business = [re.compile(p, re.IGNORECASE) for p in ALUMNI_BUSINESS_PATTERNS]

        self._location_canonical = {city.lower(): city for city in CITIES}
        self._location_canonical.update(LOCATION_ALIASES)
        self._location_re = self._alternation(self._location_canonical.keys(), re.IGNORECASE)

        insensitive = [k for k in SKILL_KEYWORDS if k not in CASE_SENSITIVE_SKILLS]
        self._skill_canonical = {k.lower(): k for k in insensitive}
        self._skill_re = self._alternation(insensitive, re.IGNORECASE)
        self._skill_exact_re = self._alternation(CASE_SENSITIVE_SKILLS, 0)

        self._service_canonical = {k.lower(): k for k in SERVICE_KEYWORDS}
        self._service_re = self._alternation(SERVICE_KEYWORDS, re.IGNORECASE)
        self._service_phrase_re = re.compile(SERVICE_PATTERN, re.IGNORECASE)

        self._degree_res = [re.compile(p, re.IGNORECASE) for p in DEGREE_PATTERNS]
        self._member_type_res = [(t, re.compile(p, re.IGNORECASE)) for t, p in MEMBER_TYPE_PATTERNS]
        self._name_re = re.compile(NAME_PATTERN)

    @staticmethod
    def _alternation(words, flags) -> re.Pattern:
        # Longest first so "machine learning" wins over "machine"
        ordered = sorted(words, key=lambda w: (-len(w), w))
        body = "|".join(re.escape(w).replace(r"\ ", r"\s+") for w in ordered)
        return re.compile(rf"(?<![\w/])({body})(?![\w/])", flags)

    def extract(self, text: str, context: Optional[ExtractionContext] = None) -> Extraction:
        """Extract intent and entities. Never raises for odd input."""
        normalized = normalize_text(text)
        if not normalized:
            return Extraction(intent=CONVERSATIONAL, entities=Entities(), confidence=0.0)

        lower = normalized.lower()
        unit = (context.default_turnover_unit if context and context.default_turnover_unit
                else self.config.default_turnover_unit)

        low_confidence_fields: list[str] = []

        turnover_range, turnover_guessed, turnover_spans = self._extract_turnover(lower, unit)
        if turnover_guessed:
            low_confidence_fields.append("turnover_range")

        # Turnover amounts must not be re-read as years
        year_text = self._blank_spans(lower, turnover_spans)

        entities = Entities(
            locations=self._extract_locations(normalized),
            skills=self._extract_skills(normalized),
            degree=self._extract_degree(normalized),
            year_range=self._extract_years(year_text),
            turnover_range=turnover_range,
            member_type=self._extract_member_type(lower),
            names=self._name_re.findall(normalized),
        )
        entities.services = self._extract_services(lower, entities)

        intent, intent_strength = self._classify_intent(lower, entities)
        search_type = self._classify_search_type(lower)

        if intent == DOCUMENT_QA:
            # Document questions are routed away from member filters
            entities = Entities()
            low_confidence_fields = []

        confidence = self._score(
            intent=intent,
            intent_strength=intent_strength,
            field_count=entities.field_count(),
            low_confidence_count=len(low_confidence_fields),
            word_count=len(normalized.split()),
        )

        return Extraction(
            intent=intent,
            entities=entities,
            confidence=confidence,
            method=self.method,
            search_type=search_type if intent in SEARCH_INTENTS else "general",
            low_confidence_fields=low_confidence_fields,
        )

    # -------------------------------------------------------------------------
    # Intent
    # -------------------------------------------------------------------------

    def _groups_matched(self, family: str, lower: str) -> int:
        return sum(
            1 for patterns in self._intent_patterns[family].values()
            if any(p.search(lower) for p in patterns)
        )

    def _classify_intent(self, lower: str, entities: Entities) -> tuple[str, float]:
        """Return (intent, strength in [0, 1])."""
        document = self._groups_matched("document", lower)
        member = self._groups_matched("member", lower)

        if document and member:
            return HYBRID, min((document + member) / 3, 1.0)
        if document:
            return DOCUMENT_QA, min(document / 2, 1.0)
        if member:
            return MEMBER_SEARCH, min(member / 2, 1.0)

        conversational = self._groups_matched("conversational", lower)
        if conversational and entities.is_empty():
            return CONVERSATIONAL, min(conversational / 2, 1.0)

        if entities.is_empty() and len(lower.split()) <= 2:
            return CONVERSATIONAL, 0.0
        return MEMBER_SEARCH, 0.0

    def _classify_search_type(self, lower: str) -> str:
        if all(p.search(lower) for p in self._alumni_business):
            return "find_alumni_business"
        for name, patterns in self._search_type_patterns:
            if any(p.search(lower) for p in patterns):
                return name
        return "general"

    def _score(
        self,
        intent: str,
        intent_strength: float,
        field_count: int,
        low_confidence_count: int,
        word_count: int,
    ) -> float:
        consistency = 1.0 - 0.25 * low_confidence_count
        if intent == HYBRID:
            consistency -= 0.5
        consistency = max(0.0, consistency)

        if intent in (MEMBER_SEARCH, HYBRID):
            field_score = min(field_count / 2, 1.0)
            confidence = 0.45 * field_score + 0.35 * intent_strength + 0.2 * consistency
        else:
            confidence = 0.8 * intent_strength + 0.2 * consistency

        if word_count < 3:
            confidence -= 0.1
        return _clip(confidence)

    # -------------------------------------------------------------------------
    # Field extractors
    # -------------------------------------------------------------------------

    def _extract_locations(self, text: str) -> list[str]:
        found: list[str] = []
        for match in self._location_re.finditer(text):
            key = re.sub(r"\s+", " ", match.group(1).lower())
            canonical = self._location_canonical.get(key, key.title())
            if canonical not in found:
                found.append(canonical)
        return found

    def _extract_skills(self, text: str) -> list[str]:
        hits: list[tuple[int, str]] = []
        spans = []
        for match in self._skill_re.finditer(text):
            key = re.sub(r"\s+", " ", match.group(1).lower())
            hits.append((match.start(), self._skill_canonical.get(key, match.group(1))))
            spans.append(match.span())
        for match in self._skill_exact_re.finditer(text):
            if any(start <= match.start() < end for start, end in spans):
                continue
            hits.append((match.start(), match.group(1)))

        skills: list[str] = []
        for _, skill in sorted(hits):
            if skill not in skills:
                skills.append(skill)
        return skills

    def _extract_services(self, lower: str, entities: Entities) -> list[str]:
        taken = {s.lower() for s in entities.skills} | {l.lower() for l in entities.locations}
        services: list[str] = []

        for match in self._service_re.finditer(lower):
            service = self._service_canonical.get(re.sub(r"\s+", " ", match.group(1)), match.group(1))
            if service not in services:
                services.append(service)

        for match in self._service_phrase_re.finditer(lower):
            words = match.group(1).split()
            while words and words[0] in SERVICE_STOPWORDS:
                words.pop(0)
            phrase = " ".join(words)
            if len(phrase) < 3 or phrase in taken or phrase in services:
                continue
            if any(phrase in s for s in services):
                continue
            services.append(phrase)

        return services

    def _extract_degree(self, text: str) -> Optional[str]:
        for pattern in self._degree_res:
            match = pattern.search(text)
            if match:
                key = re.sub(r"\s+", " ", match.group(1).lower())
                return DEGREE_KEYWORDS.get(key, match.group(1).strip().title())
        return None

    def _extract_member_type(self, lower: str) -> Optional[str]:
        for member_type, pattern in self._member_type_res:
            if pattern.search(lower):
                return member_type
        return None

    def _normalize_year(self, raw: str) -> Optional[int]:
        year = int(raw)
        if len(raw) == 2:
            if year <= 30:
                year += 2000
            elif year >= 50:
                year += 1900
            else:
                return None
        if MIN_GRADUATION_YEAR <= year <= self._current_year:
            return year
        return None

    def _extract_years(self, lower: str) -> Optional[NumericRange]:
        match = re.search(YEAR_RANGE_PATTERN, lower)
        if match:
            first, second = self._normalize_year(match.group(1)), self._normalize_year(match.group(2))
            if first and second:
                return NumericRange(min=min(first, second), max=max(first, second))

        low = high = None
        after = re.search(YEAR_AFTER_PATTERN, lower)
        if after:
            year = self._normalize_year(after.group(2))
            if year:
                low = year + 1 if after.group(1) in ("after", "post") else year
        before = re.search(YEAR_BEFORE_PATTERN, lower)
        if before:
            year = self._normalize_year(before.group(2))
            if year:
                high = year - 1 if before.group(1).startswith(("before", "prior")) else year
        if low is not None or high is not None:
            return NumericRange(min=low, max=high)

        years: list[int] = []
        for pattern in YEAR_BATCH_PATTERNS:
            for raw in re.findall(pattern, lower):
                year = self._normalize_year(raw)
                if year:
                    years.append(year)
        if not years:
            years = [y for y in (self._normalize_year(r) for r in re.findall(BARE_YEAR_PATTERN, lower)) if y]
        if years:
            return NumericRange(min=min(years), max=max(years))
        return None

    @staticmethod
    def _looks_like_year(amount: str) -> bool:
        try:
            value = float(amount)
        except ValueError:
            return False
        return value.is_integer() and MIN_GRADUATION_YEAR <= value <= 2100

    def _amount(self, amount: str, unit: Optional[str], default_unit: str) -> int:
        multiplier = TURNOVER_UNITS.get((unit or default_unit).lower(), TURNOVER_UNITS["crore"])
        return int(round(float(amount) * multiplier))

    def _extract_turnover(self, lower: str, default_unit: str) -> tuple[Optional[NumericRange], bool, list]:
        """Return (range, unit_was_guessed, matched_spans)."""
        has_context = re.search(TURNOVER_CONTEXT_PATTERN, lower) is not None
        spans = []
        guessed = False

        for pattern in TURNOVER_BUCKET_PATTERNS:
            match = re.search(pattern, lower)
            if match:
                low, high = TURNOVER_BUCKETS[match.group(1)]
                return NumericRange(min=low, max=high), False, [match.span()]

        match = re.search(TURNOVER_BETWEEN_PATTERN, lower)
        if match:
            first, unit1, second, unit2 = match.groups()
            unit1 = unit1 or unit2
            unit2 = unit2 or unit1
            if unit1 or (has_context and not self._looks_like_year(first)):
                if not unit1:
                    guessed = True
                low = self._amount(first, unit1, default_unit)
                high = self._amount(second, unit2, default_unit)
                return NumericRange(min=min(low, high), max=max(low, high)), guessed, [match.span()]

        low = high = None
        for pattern, is_min in ((TURNOVER_MIN_PATTERN, True), (TURNOVER_MAX_PATTERN, False)):
            match = re.search(pattern, lower)
            if not match:
                continue
            amount, unit = match.groups()
            if not unit and not (has_context and not self._looks_like_year(amount)):
                continue
            if not unit:
                guessed = True
            value = self._amount(amount, unit, default_unit)
            spans.append(match.span())
            if is_min:
                low = value
            else:
                high = value

        if low is None and high is None:
            return None, False, []
        return NumericRange(min=low, max=high), guessed, spans

    @staticmethod
    def _blank_spans(text: str, spans: list) -> str:
        chars = list(text)
        for start, end in spans:
            for i in range(start, end):
                chars[i] = " "
        return "".join(chars)


# =============================================================================
# Slow path
# =============================================================================

class LLMExtractor:
    """
    Structured-output extractor backed by an LLM provider.

    Makes at most one provider call per message. Any failure, including a
    malformed reply, raises ExtractionDegraded for the chain to absorb.
    """

    method = "llm"

    def __init__(self, provider, config: Optional[ExtractorConfig] = None, retry_policy: Optional[RetryPolicy] = None):
        self.provider = provider
        self.config = config or ExtractorConfig()
        self._policy = retry_policy or RetryPolicy(
            max_attempts=1,
            attempt_timeout=self.config.slow_path_timeout_seconds,
        )

    def extract(
        self,
        text: str,
        context: Optional[ExtractionContext] = None,
        deadline: Optional[Deadline] = None,
    ) -> Extraction:
        history = context.history[-self.config.history_context_turns:] if context else []

        try:
            payload = self._policy.call(
                lambda: self.provider.extract_structured(text, EXTRACTION_SCHEMA, history=history),
                deadline=deadline,
                label="extraction",
            )
        except ProviderError as e:
            raise ExtractionDegraded(f"Slow-path extraction failed: {e.message}", cause=e)

        if not isinstance(payload, dict):
            raise ExtractionDegraded("Slow-path extraction returned a non-object payload")

        intent = payload.get("intent")
        if intent not in VALID_INTENTS:
            raise ExtractionDegraded(f"Slow-path extraction returned unknown intent {intent!r}")

        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError):
            raise ExtractionDegraded("Slow-path extraction returned a non-numeric confidence")

        search_type = payload.get("search_type")
        if search_type not in SEARCH_TYPES:
            search_type = "general"

        return Extraction(
            intent=intent,
            entities=Entities.from_dict(payload.get("entities")),
            confidence=_clip(confidence),
            method=self.method,
            search_type=search_type,
        )


# =============================================================================
# Chain
# =============================================================================

class ExtractorChain:
    """
    Compose extractors by a confidence threshold.

    The first extractor always runs. Each later extractor runs only while
    the current result is below ``threshold``; its entities win on
    conflict and its confidence is adopted.
    """

    def __init__(self, extractors: list, config: Optional[ExtractorConfig] = None):
        if not extractors:
            raise ValueError("ExtractorChain needs at least one extractor")
        self._extractors = extractors
        self.config = config or ExtractorConfig()

    @property
    def threshold(self) -> float:
        return self.config.confidence_threshold

    def extract(
        self,
        text: str,
        context: Optional[ExtractionContext] = None,
        deadline: Optional[Deadline] = None,
    ) -> Extraction:
        try:
            result = self._extractors[0].extract(text, context)
        except Exception as e:
            logger.error(f"Fast-path extraction crashed, returning unknown: {e}")
            return Extraction.unknown()

        if not normalize_text(text):
            return result

        for extractor in self._extractors[1:]:
            if result.confidence >= self.threshold:
                break

            if deadline is not None and deadline.expired():
                return self._degrade(result, "request deadline exhausted before slow path")

            try:
                slow = extractor.extract(text, context=context, deadline=deadline)
            except ExtractionDegraded as e:
                return self._degrade(result, e.message)
            except Exception as e:
                logger.error(f"Slow-path extraction crashed: {e}")
                return self._degrade(result, str(e))

            result = self._merge(result, slow)
            logger.info(
                f"Slow-path extraction adopted: intent={result.intent} "
                f"confidence={result.confidence:.2f}"
            )

        return result

    def _degrade(self, result: Extraction, reason: str) -> Extraction:
        logger.warning(f"Extraction degraded to fast path: {reason}")
        return replace(
            result,
            confidence=_clip(result.confidence * self.config.degraded_confidence_factor),
            degraded=True,
            degraded_reason=reason,
        )

    @staticmethod
    def _merge(fast: Extraction, slow: Extraction) -> Extraction:
        entities = fast.entities.merged_with(slow.entities)
        slow_fields = slow.entities.to_dict()
        low_confidence = [f for f in fast.low_confidence_fields if f not in slow_fields]
        if slow.intent == DOCUMENT_QA:
            entities = Entities()
            low_confidence = []
        return Extraction(
            intent=slow.intent,
            entities=entities,
            confidence=slow.confidence,
            method=slow.method,
            search_type=slow.search_type if slow.search_type != "general" else fast.search_type,
            low_confidence_fields=low_confidence,
        )


def build_extractor_chain(provider=None, config: Optional[ExtractorConfig] = None) -> ExtractorChain:
    """Fast path alone, or fast path followed by the LLM slow path."""
    config = config or ExtractorConfig()
    extractors = [PatternExtractor(config)]
    if provider is not None:
        extractors.append(LLMExtractor(provider, config))
    return ExtractorChain(extractors, config)
