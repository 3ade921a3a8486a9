"""
Local Image Library
===================
Matches concepts against diagram files stored on disk under
`{root}/{grade}/{subject}/`.

Matching is token overlap between the cleaned concept text and the cleaned
filename. The cleaned filename is only used for scoring; URLs always carry
the original on-disk filename.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote

from .keywords import (
    ACTION_VERBS,
    clean_concept_text,
    strip_markdown,
    tokenize,
)
from .models import ImageCandidate, ImageResult, MatchResult, NoMatchGuidance

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg")

DEFAULT_MATCH_THRESHOLD = 40.0

LOCAL_SOURCE = "Local Library"

# ─── Filename Patterns ────────────────────────────────────────────────────────

EXTENSION_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|svg)$", re.IGNORECASE)

# "01-", "12-" ordering prefixes
NUMERIC_PREFIX_PATTERN = re.compile(r"^\d+-")

# "describe-", "identify-" ...
LEADING_VERB_DASH_PATTERN = re.compile(r"^(?:" + "|".join(ACTION_VERBS) + r")-")

SUGGESTED_FILENAME_LENGTH = 60


# ─── Folder Names ─────────────────────────────────────────────────────────────

# First matching rule wins; otherwise the subject is kebab-cased.
SUBJECT_FOLDER_RULES = [
    (re.compile(r"home science|nutrition"), "home-science"),
    (re.compile(r"science"), "science"),
    (re.compile(r"math"), "mathematics"),
    (re.compile(r"social"), "social-studies"),
    (re.compile(r"agricultur"), "agriculture"),
    (re.compile(r"\bict\b|computer"), "ict"),
    (re.compile(r"english"), "english"),
    (re.compile(r"swahili"), "kiswahili"),
]


def to_kebab_case(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def normalize_grade(grade: str) -> str:
    """"Grade 7" → "grade-7", "PP 1" → "pp1"."""
    normalized = re.sub(r"\s+", "-", (grade or "").strip().lower())
    return re.sub(r"^pp-", "pp", normalized)


def normalize_subject(subject: str) -> str:
    lower = (subject or "").strip().lower()
    for pattern, folder in SUBJECT_FOLDER_RULES:
        if pattern.search(lower):
            return folder
    return to_kebab_case(lower)


# ─── Filename Cleaning & Scoring ──────────────────────────────────────────────


def _clean_filename_once(name: str) -> str:
    name = name.strip().lower().replace("_", "-")
    name = strip_markdown(name)
    name = EXTENSION_PATTERN.sub("", name)
    name = NUMERIC_PREFIX_PATTERN.sub("", name)
    name = LEADING_VERB_DASH_PATTERN.sub("", name)
    return name.strip("-")


def clean_filename(filename: str) -> str:
    """
    Reduce a filename to its matchable words.

    Repeated until stable, so "01-02-describe-x.png.jpg" and its cleaned
    form clean to the same value.
    """
    cleaned = filename or ""
    while True:
        step = _clean_filename_once(cleaned)
        if step == cleaned:
            return step
        cleaned = step


def make_candidate(filename: str) -> ImageCandidate:
    return ImageCandidate(
        filename=filename,
        normalized_tokens=frozenset(tokenize(clean_filename(filename))),
    )


def suggest_filename(concept_text: str) -> str:
    """Filename an operator should use for a diagram of this concept."""
    stem = to_kebab_case(clean_concept_text(concept_text))
    stem = stem[:SUGGESTED_FILENAME_LENGTH].strip("-") or "diagram"
    return f"{stem}.jpg"


class LocalImageMatcher:
    """Weighted token-overlap scoring of concepts against filenames."""

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD):
        self.threshold = threshold

    def score(self, concept_text: str, candidate: ImageCandidate) -> float:
        """
        Score 0-100. Earlier concept words weigh more (weight = count - index);
        a word matches a filename token when either contains the other.
        """
        words = tokenize(clean_concept_text(concept_text))
        if not words or not candidate.normalized_tokens:
            return 0.0

        count = len(words)
        total = 0
        matched = 0
        for index, word in enumerate(words):
            weight = count - index
            total += weight
            if any(
                word == token or word in token or token in word
                for token in candidate.normalized_tokens
            ):
                matched += weight

        return matched / total * 100

    def find_best(
        self,
        concept_text: str,
        candidates: Iterable[ImageCandidate],
    ) -> Optional[MatchResult]:
        """Highest-scoring candidate, or None when it is below threshold."""
        best: Optional[ImageCandidate] = None
        best_score = 0.0

        for candidate in candidates:
            score = self.score(concept_text, candidate)
            if score > best_score:
                best, best_score = candidate, score

        if best is None or best_score < self.threshold:
            logger.debug(
                f"No local match for '{concept_text[:50]}' "
                f"(best {best_score:.1f}%, threshold {self.threshold}%)"
            )
            return None

        return MatchResult(candidate=best, score=best_score)


# ─── Library ──────────────────────────────────────────────────────────────────


class LocalImageLibrary:
    """
    Folder-backed diagram library with a per (grade, subject) listing cache.

    The cache is only invalidated by `clear_cache`, after new images have
    been added to a folder.
    """

    def __init__(
        self,
        root: str = "diagrams",
        base_url: str = "",
        matcher: Optional[LocalImageMatcher] = None,
    ):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.matcher = matcher or LocalImageMatcher()
        self._cache: dict[str, list[ImageCandidate]] = {}

    def folder_for(self, grade: str, subject: str) -> Path:
        return self.root / normalize_grade(grade) / normalize_subject(subject)

    def image_url(self, grade: str, subject: str, filename: str) -> str:
        return (
            f"{self.base_url}/api/diagrams/{normalize_grade(grade)}/"
            f"{normalize_subject(subject)}/{quote(filename, safe='')}"
        )

    @staticmethod
    def _cache_key(grade: str, subject: str) -> str:
        return f"{normalize_grade(grade)}|{normalize_subject(subject)}"

    def _scan(self, folder: Path) -> list[ImageCandidate]:
        if not folder.is_dir():
            logger.info(f"Diagram folder not found: {folder}")
            return []
        return [
            make_candidate(path.name)
            for path in sorted(folder.iterdir())
            if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS
        ]

    async def get_candidates(self, grade: str, subject: str) -> list[ImageCandidate]:
        """List a folder's images; a missing folder yields no candidates."""
        key = self._cache_key(grade, subject)
        if key in self._cache:
            return self._cache[key]

        folder = self.folder_for(grade, subject)
        candidates = await asyncio.to_thread(self._scan, folder)
        self._cache[key] = candidates
        logger.debug(f"Cached {len(candidates)} images for {key}")
        return candidates

    async def list_images(self, grade: str, subject: str) -> list[str]:
        return [c.filename for c in await self.get_candidates(grade, subject)]

    async def find_image(
        self,
        concept_text: str,
        grade: str,
        subject: str,
        exclude_urls: Iterable[str] = (),
    ) -> Optional[ImageResult]:
        """Best local image for a concept, skipping already-used URLs."""
        excluded = set(exclude_urls)
        candidates = [
            c for c in await self.get_candidates(grade, subject)
            if self.image_url(grade, subject, c.filename) not in excluded
        ]

        match = self.matcher.find_best(concept_text, candidates)
        if match is None:
            return None

        filename = match.candidate.filename
        logger.info(f"Local match: {filename} ({match.score:.0f}%)")
        return ImageResult(
            image_url=self.image_url(grade, subject, filename),
            source=LOCAL_SOURCE,
            score=match.score,
            filename=filename,
        )

    async def guidance(self, concept_text: str, grade: str, subject: str) -> NoMatchGuidance:
        """Tell an operator where to drop an image for an unmatched concept."""
        candidates = await self.get_candidates(grade, subject)
        best = max(
            (self.matcher.score(concept_text, c) for c in candidates),
            default=0.0,
        )
        reason = (
            "No images in folder" if not candidates
            else f"Best similarity {best:.0f}% is below {self.matcher.threshold:.0f}%"
        )
        return NoMatchGuidance(
            reason=reason,
            suggested_path=(
                f"diagrams/{normalize_grade(grade)}/{normalize_subject(subject)}/"
            ),
            suggested_filename=suggest_filename(concept_text),
            best_score=round(best, 2),
        )

    async def test_match(
        self,
        concept_text: str,
        grade: str,
        subject: str,
    ) -> list[tuple[str, float]]:
        """Every candidate with its score, best first."""
        candidates = await self.get_candidates(grade, subject)
        scored = [
            (c.filename, round(self.matcher.score(concept_text, c), 2))
            for c in candidates
        ]
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def clear_cache(self, grade: Optional[str] = None, subject: Optional[str] = None):
        """Drop cached listings, for one folder or all of them."""
        if grade is not None and subject is not None:
            self._cache.pop(self._cache_key(grade, subject), None)
        else:
            self._cache.clear()
        logger.info("Local image cache cleared")
