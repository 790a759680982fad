"""
Response Formatting for the Messaging Channel

Template-based rendering of ranked members and of every user-facing
message the pipeline can produce: empty results with suggestions,
broadened/degraded notes, rate-limit, validation and outage messages.

Output uses the channel's light markup (*bold*, _italic_).
"""

import re
import logging
from collections import Counter
from typing import Optional

from .errors import RateLimitExceeded, ValidationError
from .extractor import Extraction
from .extraction_patterns import INTENT_PATTERNS
from .ranker import RankedMember

logger = logging.getLogger(__name__)

MAX_LISTED = 10
MAX_LISTED_PERSON = 5
MAX_SUGGESTIONS = 3

FILTER_LABELS = {
    "turnover_range": "turnover",
    "year_range": "graduation year",
    "degree": "degree",
    "member_type": "member type",
    "cities": "location",
}

DEGRADED_NOTE = "_Results may be limited right now; some matching signals were unavailable._"
DATA_STORE_MESSAGE = (
    "Sorry, the member directory is temporarily unavailable. "
    "Please try again in a minute."
)
SESSION_UNAVAILABLE_MESSAGE = (
    "Sorry, I couldn't load your conversation right now. "
    "Please send your message again in a moment."
)
DOCUMENT_REDIRECT_MESSAGE = (
    "That sounds like a question about community documents or policies. "
    "I can only search the member directory here; please check the community "
    "notice board or ask an admin."
)
HELP_MESSAGE = (
    "I can help you find people in your community. Try:\n"
    "- find AI experts in Chennai\n"
    "- manufacturing businesses with turnover above 5 crores\n"
    "- 2015 batch mechanical engineers in Bangalore"
)
GREETING_MESSAGE = "Hi! " + HELP_MESSAGE
THANKS_MESSAGE = "You're welcome! Send another search any time."

_CONVERSATIONAL = {
    group: [re.compile(p, re.IGNORECASE) for p in patterns]
    for group, patterns in INTENT_PATTERNS["conversational"].items()
}


def describe_window(seconds: float) -> str:
    """Window length as text: "hour", "2 hours", "day", "90 seconds"."""
    seconds = int(seconds)
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds == size:
            return unit
        if seconds > size and seconds % size == 0:
            return f"{seconds // size} {unit}s"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def format_turnover(amount: Optional[float]) -> str:
    """Render rupees in crores, lakhs or thousands."""
    if not amount or amount <= 0:
        return ""
    if amount >= 10_000_000:
        return f"₹{amount / 10_000_000:.1f} Cr"
    if amount >= 100_000:
        return f"₹{amount / 100_000:.1f} L"
    return f"₹{amount / 1000:.0f}K"


def _contacts(member) -> str:
    parts = []
    if member.phone:
        parts.append(member.phone)
    if member.email:
        parts.append(member.email)
    return " | ".join(parts)


class ResponseFormatter:
    """Formats pipeline outcomes as channel text."""

    # =========================================================================
    # Results
    # =========================================================================

    def format_results(self, members: list[RankedMember], extraction: Extraction) -> str:
        if not members:
            return self.format_empty(extraction)

        search_type = extraction.search_type
        if search_type in ("find_business", "find_alumni_business"):
            header, items = self._business_header(members, extraction), self._business_items(members)
        elif search_type == "find_peers":
            header, items = self._peer_header(members, extraction), self._peer_items(members)
        elif search_type == "find_person":
            header, items = self._person_header(members, extraction), self._person_items(members)
        else:
            header, items = f"Found {len(members)} members:", self._generic_items(members)

        footer = f"_Found {len(members)} {'result' if len(members) == 1 else 'results'}_"
        if search_type == "find_person" and len(members) > MAX_LISTED_PERSON:
            footer = f"_Showing top {MAX_LISTED_PERSON} of {len(members)} matches_"

        return "\n\n".join([header, *items, footer])

    def _business_header(self, members, extraction: Extraction) -> str:
        entities = extraction.entities
        parts = ["Found"]
        if entities.services:
            parts.append(f"*{entities.services[0]}*")
        parts.append("businesses")
        if entities.location:
            parts.append(f"in *{entities.location}*")
        parts.append(f"({len(members)} results):")
        return " ".join(parts)

    def _peer_header(self, members, extraction: Extraction) -> str:
        entities = extraction.entities
        parts = []
        if entities.year_range and entities.year_range.min and entities.year_range.min == entities.year_range.max:
            parts.append(f"*{int(entities.year_range.min)} batch*")
        if entities.degree:
            parts.append(f"*{entities.degree}*")
        parts.append("alumni")
        if len(parts) == 1:
            parts.insert(0, "Found")
        if entities.location:
            parts.append(f"in *{entities.location}*")
        parts.append(f"({len(members)} results):")
        return " ".join(parts)

    def _person_header(self, members, extraction: Extraction) -> str:
        if extraction.entities.names:
            return f"Found matches for *{extraction.entities.names[0]}*:"
        return f"Found {len(members)} members:"

    def _business_items(self, members: list[RankedMember]) -> list[str]:
        items = []
        for ranked in members[:MAX_LISTED]:
            m = ranked.member
            lines = [f"{ranked.rank}. *{m.organization or m.name}*"]
            if m.organization and m.name:
                lines.append(f"   {m.name}")
            if m.city:
                lines.append(f"   {m.city}")
            offering = m.services or m.skills
            if offering:
                lines.append(f"   {', '.join(offering)}")
            turnover = format_turnover(m.annual_turnover)
            if turnover:
                lines.append(f"   Turnover: {turnover}")
            contacts = _contacts(m)
            if contacts:
                lines.append(f"   {contacts}")
            items.append("\n".join(lines))
        return items

    def _peer_items(self, members: list[RankedMember]) -> list[str]:
        items = []
        for ranked in members[:MAX_LISTED]:
            m = ranked.member
            lines = [f"{ranked.rank}. *{m.name}*"]
            background = []
            if m.graduation_year:
                background.append(f"'{str(m.graduation_year)[-2:]}")
            if m.degree:
                background.append(m.degree)
            if background:
                lines.append(f"   {' • '.join(background)}")
            if m.designation or m.organization:
                role = m.designation or "Working"
                lines.append(f"   {role}{f' at {m.organization}' if m.organization else ''}")
            if m.city:
                lines.append(f"   {m.city}")
            contacts = _contacts(m)
            if contacts:
                lines.append(f"   {contacts}")
            items.append("\n".join(lines))
        return items

    def _person_items(self, members: list[RankedMember]) -> list[str]:
        items = []
        for ranked in members[:MAX_LISTED_PERSON]:
            m = ranked.member
            lines = [f"{ranked.rank}. *{m.name}*"]
            role = " at ".join(p for p in (m.designation, m.organization) if p)
            if role:
                lines.append(f"   {role}")
            if m.graduation_year:
                lines.append(f"   Batch of {m.graduation_year}{f' • {m.degree}' if m.degree else ''}")
            if m.city:
                lines.append(f"   {m.city}")
            if m.skills:
                lines.append(f"   Skills: {', '.join(m.skills)}")
            if m.services:
                lines.append(f"   Services: {', '.join(m.services)}")
            contacts = _contacts(m)
            if contacts:
                lines.append(f"   {contacts}")
            items.append("\n".join(lines))
        return items

    def _generic_items(self, members: list[RankedMember]) -> list[str]:
        items = []
        for ranked in members[:MAX_LISTED]:
            m = ranked.member
            parts = [f"*{m.name}*"]
            if m.designation or m.organization:
                parts.append(" at ".join(p for p in (m.designation, m.organization) if p))
            if m.city:
                parts.append(m.city)
            line = f"{ranked.rank}. {', '.join(parts)}"
            if m.skills:
                line += f"\n   {', '.join(m.skills[:5])}"
            contacts = _contacts(m)
            if contacts:
                line += f"\n   {contacts}"
            items.append(line)
        return items

    # =========================================================================
    # Empty results and suggestions
    # =========================================================================

    def format_empty(self, extraction: Extraction) -> str:
        entities = extraction.entities
        parts = ["I couldn't find any members"]
        if entities.skills:
            parts.append(f"with *{', '.join(entities.skills)}*")
        if entities.services:
            parts.append(f"offering *{entities.services[0]}*")
        if entities.year_range:
            low, high = entities.year_range.min, entities.year_range.max
            if low and high and low == high:
                parts.append(f"from the *{int(low)} batch*")
            else:
                parts.append("in that graduation period")
        if entities.location:
            parts.append(f"in *{entities.location}*")
        text = " ".join(parts) + "."

        suggestions = self.empty_result_suggestions(extraction)
        if suggestions:
            text += "\n\nYou could try:\n" + "\n".join(f"- {s}" for s in suggestions)
        return text

    def empty_result_suggestions(self, extraction: Extraction) -> list[str]:
        entities = extraction.entities
        suggestions = []
        if entities.locations:
            suggestions.append("Search without the location filter")
        if entities.year_range:
            suggestions.append("Search without the year filter")
        if entities.degree:
            suggestions.append("Search without the degree filter")
        if entities.turnover_range:
            suggestions.append("Search without the turnover filter")
        if entities.services:
            suggestions.append("Try related services")
        elif entities.skills:
            suggestions.append("Try related skills")
        else:
            suggestions.append("Try broader keywords")
        if extraction.search_type in ("find_business", "find_alumni_business"):
            suggestions.append("Browse all businesses")
        else:
            suggestions.append("Browse all members")
        return suggestions[:MAX_SUGGESTIONS]

    def follow_up_suggestions(self, members: list[RankedMember], extraction: Extraction) -> list[str]:
        """Refinements drawn from the most common values in the result set."""
        if not members:
            return []
        entities = extraction.entities
        suggestions = []

        cities = Counter(m.member.city for m in members if m.member.city)
        if cities and not entities.locations:
            suggestions.append(f"Show only in {cities.most_common(1)[0][0]}")

        years = Counter(m.member.graduation_year for m in members if m.member.graduation_year)
        if years and not entities.year_range:
            suggestions.append(f"Show only the {years.most_common(1)[0][0]} batch")

        requested = {s.lower() for s in entities.skills + entities.services}
        skills = Counter(
            s for m in members for s in m.member.skills + m.member.services
            if s.lower() not in requested
        )
        if skills:
            suggestions.append(f"Find {skills.most_common(1)[0][0]} experts")

        if extraction.search_type in ("find_business", "find_alumni_business") and not entities.turnover_range:
            suggestions.append("Show businesses with high turnover")

        return suggestions[:MAX_SUGGESTIONS]

    # =========================================================================
    # Notes
    # =========================================================================

    def broadened_note(self, dropped_filters: list[str]) -> str:
        labels = [FILTER_LABELS.get(f, f) for f in dropped_filters]
        return f"_No exact matches, so I relaxed the {' and '.join(labels)} filter._"

    def degraded_note(self) -> str:
        return DEGRADED_NOTE

    # =========================================================================
    # Non-result messages
    # =========================================================================

    def conversational(self, text: str) -> str:
        lower = (text or "").strip().lower()
        if any(p.search(lower) for p in _CONVERSATIONAL["thanks"]):
            return THANKS_MESSAGE
        if any(p.search(lower) for p in _CONVERSATIONAL["greeting"]):
            return GREETING_MESSAGE
        return HELP_MESSAGE

    def document_redirect(self) -> str:
        return DOCUMENT_REDIRECT_MESSAGE

    def rate_limited(self, error: RateLimitExceeded) -> str:
        minutes = max(1, -(-error.retry_after // 60))
        noun = "searches" if error.category == "search" else "messages"
        return (
            f"You've reached the limit of {error.limit} {noun} per {describe_window(error.window_seconds)}. "
            f"Please try again in about {minutes} minute{'s' if minutes != 1 else ''}."
        )

    def validation_error(self, error: ValidationError) -> str:
        return f"{error.message} Please send a short question, for example: find AI experts in Chennai"

    def data_store_error(self) -> str:
        return DATA_STORE_MESSAGE

    def session_unavailable(self) -> str:
        return SESSION_UNAVAILABLE_MESSAGE
