"""
Conversational context for follow-up queries.

Lets "what about in Mumbai?" reuse the skills of the previous search, and
renders recent turns for the slow-path extraction prompt.
"""

import re
import time
import logging
from typing import Optional
from dataclasses import replace

from .extractor import Entities, Extraction, SEARCH_INTENTS
from .extraction_patterns import FOLLOW_UP_PATTERNS
from .session_store import Turn, SEARCH

logger = logging.getLogger(__name__)

_FOLLOW_UP_RES = [re.compile(p, re.IGNORECASE) for p in FOLLOW_UP_PATTERNS]


def is_follow_up(text: str, extraction: Extraction) -> bool:
    """A follow-up either reads like one or narrows filters without naming what to find."""
    lower = (text or "").strip().lower()
    if any(p.search(lower) for p in _FOLLOW_UP_RES):
        return True
    entities = extraction.entities
    has_subject = bool(entities.skills or entities.services or entities.names)
    has_filter = bool(
        entities.locations or entities.year_range or entities.turnover_range
        or entities.degree or entities.member_type
    )
    return has_filter and not has_subject


def _last_search_turn(history: list[Turn]) -> Optional[Turn]:
    for turn in reversed(history):
        if turn.kind == SEARCH and turn.extraction:
            return turn
    return None


def resolve_follow_up(extraction: Extraction, history: list[Turn], text: str = "") -> Extraction:
    """
    Fill fields the new query left unset from the previous search turn.

    Fields the new query sets always win. Returns the extraction unchanged
    when there is nothing to inherit.
    """
    if extraction.intent not in SEARCH_INTENTS or not history:
        return extraction
    if not is_follow_up(text, extraction):
        return extraction

    previous = _last_search_turn(history)
    if previous is None:
        return extraction

    prior = Entities.from_dict(previous.extraction.get("entities", {}))
    merged = prior.merged_with(extraction.entities)
    if merged == extraction.entities:
        return extraction

    search_type = extraction.search_type
    if search_type == "general":
        search_type = previous.extraction.get("search_type", "general")

    logger.info(f"Applied context from turn {previous.turn_id}: {merged.to_dict()}")
    return replace(extraction, entities=merged, search_type=search_type, context_applied=True)


def _ago(seconds: float) -> str:
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds // 60)} minutes ago"
    return f"{int(seconds // 3600)} hours ago"


def build_conversation_context(history: list[Turn], limit: int = 3, now: Optional[float] = None) -> list[str]:
    """Render the last ``limit`` turns, oldest first, one line each."""
    now = time.time() if now is None else now
    lines = []
    for turn in history[-limit:] if limit > 0 else []:
        count = turn.result_summary.get("count")
        suffix = f", {count} results" if count is not None else ""
        lines.append(f'"{turn.query_text}" ({_ago(max(0.0, now - turn.created_at))}{suffix})')
    return lines
