"""
Concept Selection
=================
Picks which learning concepts of a concept breakdown deserve a diagram,
and formats their figure captions.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .models import Concept, ParsedTable

logger = logging.getLogger(__name__)

# +20 each
HIGH_VISUAL_KEYWORDS = (
    "diagram", "map", "structure", "parts", "cycle", "process", "system",
    "comparison", "types", "classification", "stages", "growth", "development",
    "plant", "animal", "body", "organ", "cell", "experiment", "apparatus",
    "ecosystem", "food chain", "life cycle", "water cycle", "energy",
    "weather", "climate", "seasons", "county", "counties", "location",
    "historical sources", "preservation", "timeline", "government structure",
    "shape", "angle", "measurement", "graph", "chart", "pattern", "symmetry",
    "farm", "crop", "livestock", "tools", "planting", "harvest",
    "nutrition", "food groups", "balanced diet", "kitchen",
    "computer parts", "keyboard", "hardware", "software",
)

# +10 each
MEDIUM_VISUAL_KEYWORDS = (
    "describe", "identify", "explain", "demonstrate", "show", "illustrate",
    "elements", "components", "features", "characteristics", "factors",
    "methods", "techniques", "steps", "procedures",
)

# -10 each
LOW_VISUAL_KEYWORDS = (
    "discuss", "debate", "argue", "opinion", "perspective", "viewpoint",
    "appreciate", "value", "recognize significance", "understand importance",
)

BASE_VISUAL_SCORE = 50

CAPTION_VERB_PATTERN = re.compile(
    r"^(Describe|Explain|Identify|Analyze|Examine|Demonstrate|Show|Illustrate)\s+",
    re.IGNORECASE,
)
MAX_CAPTION_LENGTH = 80

WEEK_NUMBER_PATTERN = re.compile(r"\d+")


def concepts_from_table(table: Optional[ParsedTable]) -> list[Concept]:
    """Concepts of a reconciled concept breakdown (week col 1, concept col 4)."""
    if table is None:
        return []
    return [
        Concept(label=row[4], week=row[1], index=i)
        for i, row in enumerate(table.rows)
        if len(row) >= 5 and row[4].strip()
    ]


def extract_week_number(week: Optional[str]) -> int:
    if not week:
        return 0
    match = WEEK_NUMBER_PATTERN.search(week)
    return int(match.group(0)) if match else 0


def score_visual_potential(text: str) -> int:
    """How likely a concept is to benefit from a diagram, 0-100."""
    lower = text.lower()
    score = BASE_VISUAL_SCORE
    score += 20 * sum(1 for kw in HIGH_VISUAL_KEYWORDS if kw in lower)
    score += 10 * sum(1 for kw in MEDIUM_VISUAL_KEYWORDS if kw in lower)
    score -= 10 * sum(1 for kw in LOW_VISUAL_KEYWORDS if kw in lower)
    return max(0, min(100, score))


def select_concepts(concepts: list[Concept], limit: int) -> list[Concept]:
    """
    Choose up to `limit` concepts, favouring high visual potential spread
    over different weeks. Returned in document order.
    """
    if limit <= 0 or not concepts:
        return []

    scored = sorted(
        concepts,
        key=lambda c: score_visual_potential(c.label),
        reverse=True,
    )
    selected: list[Concept] = []
    weeks_used: set[int] = set()

    # Pass 1: strong candidates, one per week
    for concept in scored:
        if len(selected) >= limit:
            break
        week = extract_week_number(concept.week)
        if week not in weeks_used and score_visual_potential(concept.label) > 60:
            selected.append(concept)
            weeks_used.add(week)

    # Pass 2: anything above the base score
    for concept in scored:
        if len(selected) >= limit:
            break
        if concept not in selected and score_visual_potential(concept.label) > 50:
            selected.append(concept)

    # Pass 3: fill remaining slots
    for concept in scored:
        if len(selected) >= limit:
            break
        if concept not in selected:
            selected.append(concept)

    logger.debug(f"Selected {len(selected)} of {len(concepts)} concepts for diagrams")
    return sorted(selected, key=lambda c: c.index)


def format_concept_caption(concept: Concept, number: int) -> str:
    text = CAPTION_VERB_PATTERN.sub("", concept.label.strip()).strip()
    if text:
        text = text[0].upper() + text[1:]
    if len(text) > MAX_CAPTION_LENGTH:
        text = text[:MAX_CAPTION_LENGTH - 3] + "..."
    if concept.week:
        return f"Figure {number}: {text} ({concept.week})"
    return f"Figure {number}: {text}"
