"""
Diagram Source Router
=====================
Rule-based choice between a curated media search and generated imagery for
a topic. Pure: no I/O, no state.

Rules are an ordered table; the first rule whose predicate holds decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .keywords import SubjectCategory, categorize_subject, mentions, strip_markdown
from .models import Confidence, ImageSource, RoutingDecision

logger = logging.getLogger(__name__)

# ─── Topic Vocabulary ─────────────────────────────────────────────────────────

# Processes, relationships and comparisons rarely exist as stock images
ABSTRACT_INDICATORS = (
    "relationship between",
    "difference between",
    "differences between",
    "similarities",
    "comparison",
    "compare",
    "contrast",
    "importance of",
    "role of",
    "causes of",
    "effects of",
    "impact of",
    "factors",
    "advantages",
    "disadvantages",
    "benefits of",
    "ways of",
    "meaning of",
    "concept of",
    "values",
    "responsibilities",
)

# Physical things that are well covered by labelled reference diagrams
ANATOMICAL_KEYWORDS = (
    "cell", "heart", "lung", "kidney", "liver", "stomach", "intestine",
    "skeleton", "bone", "muscle", "skin", "eye", "ear", "tooth", "teeth",
    "tongue", "nose", "brain", "digestive system", "circulatory system",
    "respiratory system", "nervous system", "excretory system",
    "reproductive system", "flower", "leaf", "leaves", "root", "stem",
    "seed", "fruit", "insect", "mammal", "bird", "fish", "circuit",
    "magnet", "lever", "pulley", "thermometer", "microscope",
    "solar system", "volcano", "water cycle",
)

GEOGRAPHIC_KEYWORDS = (
    "map", "compass", "continent", "ocean", "river", "lake", "mountain",
    "valley", "plateau", "plain", "equator", "latitude", "longitude",
    "relief", "landform", "rift valley", "desert", "physical features",
    "climate", "vegetation", "drainage", "africa", "kenya",
)


@dataclass(frozen=True)
class TopicFacts:
    """Everything the routing rules look at."""
    category: SubjectCategory
    abstract: bool
    anatomical: bool
    geographic: bool


@dataclass(frozen=True)
class RoutingRule:
    name: str
    applies: Callable[[TopicFacts], bool]
    primary: ImageSource
    fallback: ImageSource
    confidence: Confidence
    reason: str


ROUTING_RULES = [
    RoutingRule(
        name="concrete_science",
        applies=lambda f: f.category == SubjectCategory.SCIENCE and f.anatomical,
        primary=ImageSource.CURATED,
        fallback=ImageSource.GENERATED,
        confidence=Confidence.HIGH,
        reason="Concrete science structure with labelled reference diagrams",
    ),
    RoutingRule(
        name="abstract_or_social",
        applies=lambda f: f.abstract or (
            f.category == SubjectCategory.SOCIAL and not f.geographic
        ),
        primary=ImageSource.GENERATED,
        fallback=ImageSource.NONE,
        confidence=Confidence.HIGH,
        reason="Abstract concept or social topic without a physical subject",
    ),
    RoutingRule(
        name="mathematics",
        applies=lambda f: f.category == SubjectCategory.MATHEMATICS,
        primary=ImageSource.GENERATED,
        fallback=ImageSource.NONE,
        confidence=Confidence.HIGH,
        reason="Mathematics visuals must match the exact problem",
    ),
    RoutingRule(
        name="language",
        applies=lambda f: f.category == SubjectCategory.LANGUAGE,
        primary=ImageSource.GENERATED,
        fallback=ImageSource.NONE,
        confidence=Confidence.HIGH,
        reason="Language topics need custom illustrations",
    ),
    RoutingRule(
        name="geography",
        applies=lambda f: f.category == SubjectCategory.SOCIAL and f.geographic,
        primary=ImageSource.CURATED,
        fallback=ImageSource.GENERATED,
        confidence=Confidence.MEDIUM,
        reason="Geographic topic with existing maps and diagrams",
    ),
    RoutingRule(
        name="arts_practical",
        applies=lambda f: f.category in (SubjectCategory.ARTS, SubjectCategory.PRACTICAL),
        primary=ImageSource.GENERATED,
        fallback=ImageSource.CURATED,
        confidence=Confidence.MEDIUM,
        reason="Arts, practical or physical education activity",
    ),
]

DEFAULT_RULE = RoutingRule(
    name="default",
    applies=lambda f: True,
    primary=ImageSource.CURATED,
    fallback=ImageSource.GENERATED,
    confidence=Confidence.LOW,
    reason="No specific rule matched",
)


def analyze_topic(topic: str, subject: str, substrand: str = "") -> TopicFacts:
    text = strip_markdown(f"{topic} {substrand}").lower()
    return TopicFacts(
        category=categorize_subject(subject),
        abstract=any(phrase in text for phrase in ABSTRACT_INDICATORS),
        anatomical=any(mentions(text, kw) for kw in ANATOMICAL_KEYWORDS),
        geographic=any(mentions(text, kw) for kw in GEOGRAPHIC_KEYWORDS),
    )


def route(topic: str, subject: str, grade: str = "", substrand: str = "") -> RoutingDecision:
    """Decide which image source to try first for a topic."""
    facts = analyze_topic(topic, subject, substrand)
    rule = next((r for r in ROUTING_RULES if r.applies(facts)), DEFAULT_RULE)

    logger.debug(
        f"Routing '{topic[:50]}' ({subject}, {grade}) via {rule.name}: "
        f"{rule.primary.value} → {rule.fallback.value}"
    )
    return RoutingDecision(
        primary_source=rule.primary,
        fallback_source=rule.fallback,
        reason=rule.reason,
        confidence=rule.confidence,
    )
