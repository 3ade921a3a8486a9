"""
Table Schema Reconciler
=======================
Repairs a parsed-but-imperfect table so it always conforms to its kind's
canonical schema.

For schemes of work, combined outcome / experience / inquiry-question strings
are split into discrete items and distributed across lessons by rotation.
Concept breakdowns only get their headers normalized and rows padded to five
columns.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional, Sequence, Union

from .models import CurriculumEntry, DocumentKind, ParsedTable
from .table_parser import (
    CONCEPT_BREAKDOWN_HEADERS,
    DEFAULT_TERM,
    SCHEME_OF_WORK_HEADERS,
    has_placeholder_text,
    is_lesson_like,
    is_week_like,
)

logger = logging.getLogger(__name__)

# ─── Item Splitting ───────────────────────────────────────────────────────────

# "a) ", "(b) " at the start or after whitespace
LETTERED_MARKER_PATTERN = re.compile(r"(?:^|\s)\(?[a-z]\)\s*")

# "1. ", "12. "
NUMBERED_MARKER_PATTERN = re.compile(r"(?:^|\s)\d+\.\s+")

BULLET_CHARS = ("•", "●", "▪")

MIN_ITEM_LENGTH = 2

# ─── Rotation Defaults ────────────────────────────────────────────────────────

DEFAULT_OUTCOME = "Learners will achieve the learning outcomes for this lesson"
DEFAULT_EXPERIENCE = "Learners engage in learning activities"
DEFAULT_INQUIRY = "What did we learn?"
DEFAULT_RESOURCES = "Realia, charts"

ASSESSMENT_METHODS = [
    "Observation",
    "Oral questions",
    "Practical task",
    "Portfolio assessment",
    "Group discussion",
]

REFLECTION_PROMPTS = [
    "Were learners able to meet objectives?",
    "Did learners participate actively?",
    "Could learners demonstrate understanding?",
    "Were learners engaged throughout?",
    "Did learners achieve the learning goals?",
]

LESSONS_PER_WEEK = 5

# Strand values that are really prose leaking from another column
IMPLAUSIBLE_STRAND_WORDS = ("What", "Learners")

# Number of leading rows scanned for a usable strand / sub-strand
STRAND_SCAN_ROWS = 5


# ─── Header Mapping ───────────────────────────────────────────────────────────


def normalize_header(header: str) -> str:
    """Upper-case and collapse punctuation so "Sub-strand" == "SUB STRAND"."""
    return re.sub(r"[^A-Z0-9]+", " ", header.upper()).strip()


# Checked in order; the first field to claim a column owns it.
SCHEME_HEADER_RULES = [
    ("experiences", lambda h: "LEARNING EXPERIENCES" in h),
    ("inquiry", lambda h: "KEY INQUIRY" in h or "KIQ" in h),
    ("resources", lambda h: "RESOURCES" in h),
    ("assessment", lambda h: "ASSESSMENT" in h),
    ("outcomes", lambda h: "SPECIFIC LEARNING OUTCOMES" in h or "SLO" in h.split()),
    ("strand", lambda h: "STRAND" in h and "SUB" not in h),
    ("substrand", lambda h: "SUB STRAND" in h or "SUBSTRAND" in h),
    ("week", lambda h: "WEEK" in h),
    ("lesson", lambda h: "LESSON" in h),
    ("reflection", lambda h: "REFLECTION" in h),
]

CONCEPT_HEADER_RULES = [
    ("concept", lambda h: "CONCEPT" in h),
    ("substrand", lambda h: "SUB STRAND" in h or "SUBSTRAND" in h),
    ("strand", lambda h: "STRAND" in h and "SUB" not in h),
    ("term", lambda h: "TERM" in h),
    ("week", lambda h: "WEEK" in h),
]


def map_headers(headers: Sequence[str], rules) -> dict[str, int]:
    """Build a field → column index map by substring matching."""
    normalized = [normalize_header(h) for h in headers]
    mapping: dict[str, int] = {}
    claimed: set[int] = set()

    for field_name, predicate in rules:
        for idx, header in enumerate(normalized):
            if idx in claimed:
                continue
            if predicate(header):
                mapping[field_name] = idx
                claimed.add(idx)
                break

    return mapping


def _strip_marker(item: str) -> str:
    item = item.strip()
    item = re.sub(r"^\(?[a-z]\)\s*", "", item)
    item = re.sub(r"^\d+\.\s+", "", item)
    item = item.lstrip("".join(BULLET_CHARS) + "-* ").strip()
    return item


def split_items(value: str, split_questions: bool = False) -> list[str]:
    """
    Split one combined string into discrete items.

    Detection order: lettered markers "a) b)", bullet characters, numbered
    markers "1. 2.", and optionally question marks for inquiry questions.
    A string without any marker is returned as a single item.
    """
    value = (value or "").strip()
    if not value:
        return []

    if len(LETTERED_MARKER_PATTERN.findall(value)) >= 2:
        parts = LETTERED_MARKER_PATTERN.split(value)
    elif any(b in value for b in BULLET_CHARS):
        parts = re.split("|".join(re.escape(b) for b in BULLET_CHARS), value)
    elif len(NUMBERED_MARKER_PATTERN.findall(value)) >= 2:
        parts = NUMBERED_MARKER_PATTERN.split(value)
    elif split_questions and value.count("?") >= 2:
        parts = [p.strip() + "?" for p in value.split("?") if p.strip()]
    else:
        parts = [value]

    items = [_strip_marker(p) for p in parts]
    return [i for i in items if len(i) > MIN_ITEM_LENGTH]


def as_items(value: Union[Sequence[str], str, None], split_questions: bool = False) -> list[str]:
    """Normalize aux data (list or combined string) to a list of items."""
    if not value:
        return []
    if isinstance(value, str):
        return split_items(value, split_questions)

    values = [v for v in value if v and v.strip()]
    if len(values) == 1:
        return split_items(values[0], split_questions)
    return [_strip_marker(v) for v in values if _strip_marker(v)]


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


def _is_plausible(value: str, min_length: int) -> bool:
    value = value.strip()
    if len(value) <= min_length:
        return False
    if any(word in value for word in IMPLAUSIBLE_STRAND_WORDS):
        return False
    return not has_placeholder_text(value)


# ─── Reconciler ───────────────────────────────────────────────────────────────


class TableSchemaReconciler:
    """
    Conform a ParsedTable to its canonical schema.

    `reconcile` never fails: a missing table yields an empty table with the
    canonical headers.
    """

    def __init__(
        self,
        experience_stride: int = 2,
        inquiry_stride: int = 3,
        default_term: str = DEFAULT_TERM,
        default_strand: str = "",
        default_substrand: str = "",
    ):
        self.experience_stride = max(1, experience_stride)
        self.inquiry_stride = max(1, inquiry_stride)
        self.default_term = default_term
        self.default_strand = default_strand
        self.default_substrand = default_substrand

    def reconcile(
        self,
        table: Optional[ParsedTable],
        kind: DocumentKind,
        aux: Optional[CurriculumEntry] = None,
    ) -> ParsedTable:
        if kind == DocumentKind.SCHEME_OF_WORK:
            return self._reconcile_scheme(table, aux or CurriculumEntry())
        if kind == DocumentKind.CONCEPT_BREAKDOWN:
            return self._reconcile_concepts(table)

        if table is None:
            return ParsedTable(headers=["Content"], rows=[])
        return table

    # ─── Concept Breakdown ───

    def _reconcile_concepts(self, table: Optional[ParsedTable]) -> ParsedTable:
        headers = list(CONCEPT_BREAKDOWN_HEADERS)
        if table is None:
            return ParsedTable(headers=headers, rows=[])

        mapping = map_headers(table.headers, CONCEPT_HEADER_RULES)
        positional = "week" not in mapping or "concept" not in mapping
        if positional:
            logger.debug(f"Concept headers not recognised, mapping by position: {table.headers}")

        rows = []
        for raw in table.rows:
            if positional:
                cells = list(raw)
                if len(cells) == 4:
                    cells = [self.default_term] + cells
                cells = (cells + [""] * 5)[:5]
            else:
                cells = [
                    raw[mapping[f]] if f in mapping else ""
                    for f in ("term", "week", "strand", "substrand", "concept")
                ]
            if not cells[0].strip():
                cells[0] = self.default_term
            rows.append(cells)

        return ParsedTable(headers=headers, rows=rows)

    # ─── Scheme of Work ───

    def _reconcile_scheme(
        self,
        table: Optional[ParsedTable],
        aux: CurriculumEntry,
    ) -> ParsedTable:
        headers = list(SCHEME_OF_WORK_HEADERS)
        if table is None or not table.rows:
            return ParsedTable(headers=headers, rows=[])

        mapping = map_headers(table.headers, SCHEME_HEADER_RULES)
        raw_rows = table.rows

        def raw(row: list[str], field_name: str) -> str:
            idx = mapping.get(field_name)
            if idx is None or idx >= len(row):
                return ""
            return row[idx].strip()

        outcomes = as_items(aux.slo) or self._collect(raw_rows, raw, "outcomes")
        experiences = (
            as_items(aux.learning_experiences)
            or self._collect(raw_rows, raw, "experiences")
        )
        inquiries = (
            as_items(aux.key_inquiry_questions, split_questions=True)
            or self._collect(raw_rows, raw, "inquiry", split_questions=True)
        )
        resources = ", ".join(as_items(aux.resources))

        strand, substrand, synthesized = self._resolve_strands(raw_rows, raw, aux)
        if synthesized:
            logger.info(f"Synthesizing strand '{strand}' / sub-strand '{substrand}'")

        count = len(raw_rows)
        per_outcome = math.ceil(count / len(outcomes)) if outcomes else 1

        rows = []
        for i, row in enumerate(raw_rows):
            week = raw(row, "week")
            lesson = raw(row, "lesson")
            if not is_week_like(week):
                week = f"Week {i // LESSONS_PER_WEEK + 1}"
            if not is_lesson_like(lesson):
                lesson = f"Lesson {i + 1}"

            if outcomes:
                idx = min(i // per_outcome, len(outcomes) - 1)
                outcome = f"({chr(ord('a') + idx % 26)}) {outcomes[idx]}"
            else:
                outcome = f"(a) {DEFAULT_OUTCOME}"

            experience = (
                experiences[(i // self.experience_stride) % len(experiences)]
                if experiences else DEFAULT_EXPERIENCE
            )
            inquiry = (
                inquiries[(i // self.inquiry_stride) % len(inquiries)]
                if inquiries else DEFAULT_INQUIRY
            )

            row_resources = raw(row, "resources") or resources or DEFAULT_RESOURCES
            assessment = raw(row, "assessment")
            if not assessment or has_placeholder_text(assessment):
                assessment = ASSESSMENT_METHODS[i % len(ASSESSMENT_METHODS)]
            reflection = raw(row, "reflection")
            if not reflection or has_placeholder_text(reflection):
                reflection = REFLECTION_PROMPTS[i % len(REFLECTION_PROMPTS)]

            rows.append([
                week,
                lesson,
                strand if synthesized else (raw(row, "strand") or strand),
                substrand if synthesized else (raw(row, "substrand") or substrand),
                outcome,
                experience,
                inquiry,
                row_resources,
                assessment,
                reflection,
            ])

        logger.debug(
            f"Reconciled {len(rows)} lessons: {len(outcomes)} outcomes, "
            f"{len(experiences)} experiences, {len(inquiries)} inquiry questions"
        )
        return ParsedTable(headers=headers, rows=rows)

    @staticmethod
    def _collect(rows, raw, field_name: str, split_questions: bool = False) -> list[str]:
        """Gather discrete items from a raw column when no aux data exists."""
        items: list[str] = []
        for row in rows:
            items.extend(split_items(raw(row, field_name), split_questions))
        return _dedupe(items)

    def _resolve_strands(self, rows, raw, aux: CurriculumEntry) -> tuple[str, str, bool]:
        """
        Pick the strand / sub-strand for the table.

        Returns (strand, substrand, synthesized). Rows are synthesized when
        any source row lacks a plausible value.
        """
        reliable = all(
            _is_plausible(raw(r, "strand"), 3) and _is_plausible(raw(r, "substrand"), 2)
            for r in rows
        )

        strand = aux.strand.strip()
        substrand = aux.substrand.strip()

        for row in rows[:STRAND_SCAN_ROWS]:
            if not strand and _is_plausible(raw(row, "strand"), 3):
                strand = raw(row, "strand")
            if not substrand and _is_plausible(raw(row, "substrand"), 2):
                substrand = raw(row, "substrand")

        strand = strand or self.default_strand
        substrand = substrand or self.default_substrand
        return strand, substrand, not reliable
