"""
Concept Keywords
================
Text normalization shared by the image matchers, subject categorization,
and keyword extraction from free-text concept descriptions.

Subject categories and their keyword dictionaries are plain data: an ordered
list of (pattern, category) rules and one keyword tuple per category.
"""

from __future__ import annotations

import logging
import re
from enum import Enum

logger = logging.getLogger(__name__)


# ─── Text Normalization ───────────────────────────────────────────────────────

ACTION_VERBS = (
    "describe", "identify", "explain", "analyze", "analyse", "explore",
    "distinguish", "examine", "state", "define", "illustrate", "demonstrate",
    "compare", "contrast", "evaluate", "assess", "investigate", "determine",
    "calculate", "construct", "create", "design", "develop", "formulate",
    "interpret", "justify", "outline", "predict", "propose", "recall",
    "recognize", "relate", "select", "summarize", "apply", "arrange",
    "categorize", "classify", "collect", "combine", "compose", "discuss",
    "establish", "generalize", "infer", "measure", "modify", "organize",
    "plan", "prepare", "prove", "solve", "test", "verify",
)

# Leading verb of a learning outcome ("Describe the ...")
LEADING_VERB_PATTERN = re.compile(
    r"^(?:" + "|".join(ACTION_VERBS) + r")\s+", re.IGNORECASE
)

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "of", "in", "on", "at", "to", "for",
    "with", "from", "by", "about", "as", "into", "through", "during",
    "before", "after", "above", "below", "between", "among", "under",
    "over", "that", "this", "these", "those",
})

# [label](url)
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\([^\)]+\)")
EMPHASIS_PATTERN = re.compile(r"\*\*|__|\*|_|`")

TOKEN_SPLIT_PATTERN = re.compile(r"[\s\-_]+")


def strip_markdown(text: str) -> str:
    """Drop emphasis, inline code and link syntax, keeping link labels."""
    text = MARKDOWN_LINK_PATTERN.sub(r"\1", text or "")
    return EMPHASIS_PATTERN.sub("", text)


def clean_concept_text(text: str) -> str:
    """
    Normalize a concept description for matching: lower-case, no markdown,
    no leading action verb, no stopwords.
    """
    cleaned = strip_markdown(text).lower().strip()
    cleaned = LEADING_VERB_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"[^\w\s\-]", " ", cleaned)
    words = [w for w in cleaned.split() if w not in STOPWORDS]
    return " ".join(words)


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Split cleaned text into ordered words of at least `min_length` chars."""
    return [w for w in TOKEN_SPLIT_PATTERN.split(text) if len(w) >= min_length]


# ─── Subject Categories ───────────────────────────────────────────────────────


class SubjectCategory(str, Enum):
    MATHEMATICS = "mathematics"
    SCIENCE = "science"
    SOCIAL = "social"
    LANGUAGE = "language"
    ARTS = "arts"
    PRACTICAL = "practical"
    BUSINESS = "business"
    GENERAL = "general"


# First matching rule wins; no match means GENERAL.
SUBJECT_CATEGORY_RULES = [
    (re.compile(r"math"), SubjectCategory.MATHEMATICS),
    (re.compile(r"home|agricultur|nutrition"), SubjectCategory.PRACTICAL),
    (re.compile(r"science|integrated"), SubjectCategory.SCIENCE),
    (re.compile(r"social|geograph|histor|religi|\bc\.?r\.?e\b"), SubjectCategory.SOCIAL),
    (re.compile(r"english|kiswahili|language|literacy"), SubjectCategory.LANGUAGE),
    (re.compile(r"\bart|music|physical|sport|\bp\.?e\b"), SubjectCategory.ARTS),
    (re.compile(r"business|life skills"), SubjectCategory.BUSINESS),
]


def categorize_subject(subject: str) -> SubjectCategory:
    """Map a free-text subject label to its category."""
    lower = (subject or "").lower()
    for pattern, category in SUBJECT_CATEGORY_RULES:
        if pattern.search(lower):
            return category
    return SubjectCategory.GENERAL


# ─── Keyword Dictionaries ─────────────────────────────────────────────────────

MATHEMATICS_KEYWORDS = (
    "addition", "subtraction", "multiplication", "division", "fractions",
    "decimals", "percentages", "geometry", "shapes", "angles", "area",
    "perimeter", "volume", "algebra", "equations", "graphs", "statistics",
    "probability", "number line", "place value", "ratio", "proportion",
)

SCIENCE_KEYWORDS = (
    "cell", "photosynthesis", "respiration", "digestion", "circulation",
    "reproduction", "skeleton", "muscles", "nervous system", "senses",
    "food chain", "ecosystem", "habitat", "adaptation", "classification",
    "matter", "solid liquid gas", "atoms", "molecules", "elements",
    "compounds", "mixtures", "reactions", "acids", "bases", "ph",
    "forces", "motion", "energy", "gravity", "friction", "magnetism",
    "electricity", "circuits", "light", "sound", "heat", "waves",
    "solar system", "planets", "earth", "moon", "stars", "rotation",
    "revolution", "seasons", "weather", "climate", "water cycle",
    "rock cycle", "volcano", "earthquake", "erosion", "weathering",
)

SOCIAL_KEYWORDS = (
    "map", "compass", "directions", "scale", "continents", "oceans",
    "countries", "kenya", "africa", "equator", "latitude", "longitude",
    "mountains", "rivers", "lakes", "valleys", "plains", "plateau",
    "climate zones", "vegetation", "agriculture", "livestock", "fishing",
    "mining", "industry", "trade", "transport", "communication",
    "population", "settlement", "urban", "rural", "migration",
    "government", "democracy", "constitution", "rights", "responsibilities",
    "national symbols", "flag", "anthem", "coat of arms",
    "early man", "stone age", "iron age", "colonization", "independence",
    "communities", "cultures", "traditions", "customs", "religion",
)

RELIGIOUS_KEYWORDS = (
    "creation", "bible stories", "prophets", "commandments", "prayers",
    "worship", "moral values", "ethics", "character", "virtues",
)

LANGUAGE_KEYWORDS = (
    "alphabet", "vowels", "consonants", "syllables", "phonics",
    "sentence structure", "parts of speech", "noun", "verb", "adjective",
    "grammar", "tenses", "punctuation", "composition", "comprehension",
    "vocabulary", "synonyms", "antonyms", "idioms", "proverbs",
)

ARTS_KEYWORDS = (
    "drawing", "painting", "sculpture", "craft", "colors", "primary colors",
    "secondary colors", "shapes", "patterns", "texture", "balance",
    "music", "rhythm", "melody", "instruments", "dance", "drama",
    "athletics", "games", "gymnastics", "ball games", "team sports",
)

PRACTICAL_KEYWORDS = (
    "nutrition", "balanced diet", "food groups", "vitamins", "minerals",
    "hygiene", "sanitation", "disease prevention", "first aid",
    "crop farming", "livestock keeping", "soil", "fertilizer", "irrigation",
    "pests", "diseases", "harvesting", "storage", "marketing",
)

BUSINESS_KEYWORDS = (
    "entrepreneurship", "business plan", "profit", "loss", "budget",
    "saving", "investment", "banking", "money management", "marketing",
    "decision making", "problem solving", "communication", "teamwork",
    "leadership", "time management", "goal setting",
)

CATEGORY_KEYWORDS: dict[SubjectCategory, tuple[str, ...]] = {
    SubjectCategory.MATHEMATICS: MATHEMATICS_KEYWORDS,
    SubjectCategory.SCIENCE: SCIENCE_KEYWORDS,
    SubjectCategory.SOCIAL: SOCIAL_KEYWORDS + RELIGIOUS_KEYWORDS,
    SubjectCategory.LANGUAGE: LANGUAGE_KEYWORDS,
    SubjectCategory.ARTS: ARTS_KEYWORDS,
    SubjectCategory.PRACTICAL: PRACTICAL_KEYWORDS,
    SubjectCategory.BUSINESS: BUSINESS_KEYWORDS,
    SubjectCategory.GENERAL: (
        MATHEMATICS_KEYWORDS + SCIENCE_KEYWORDS + SOCIAL_KEYWORDS
        + LANGUAGE_KEYWORDS + ARTS_KEYWORDS + PRACTICAL_KEYWORDS
        + RELIGIOUS_KEYWORDS + BUSINESS_KEYWORDS
    ),
}

# Prompt boilerplate that carries no topic information
BOILERPLATE_PATTERN = re.compile(
    r"educational diagram|\bshowing\b|\billustrating\b|\bfor\b|grade \d+",
    re.IGNORECASE,
)

FALLBACK_KEYWORD_COUNT = 3
DEFAULT_KEYWORD = "educational"


def mentions(text: str, term: str) -> bool:
    """Whole-word match tolerating a plural suffix ("cell" matches "cells")."""
    return re.search(r"\b" + re.escape(term) + r"(?:s|es)?\b", text) is not None


def extract_keywords(concept_text: str, subject: str) -> list[str]:
    """
    Derive search keywords for a concept.

    Dictionary keywords of the subject's category found in the text win;
    otherwise the first few long words of the text are used.
    """
    text = strip_markdown(concept_text).lower()
    category = categorize_subject(subject)

    keywords = [
        kw for kw in CATEGORY_KEYWORDS[category]
        if mentions(text, kw)
    ]

    if not keywords:
        stripped = BOILERPLATE_PATTERN.sub(" ", text)
        words = [re.sub(r"[^\w\-]", "", w) for w in stripped.split()]
        keywords = [w for w in words if len(w) > 3][:FALLBACK_KEYWORD_COUNT]

    if not keywords:
        keywords = [DEFAULT_KEYWORD]

    unique = list(dict.fromkeys(keywords))
    logger.debug(f"Keywords for '{concept_text[:50]}' ({category.value}): {unique}")
    return unique
