"""
Table Parser
============
Deterministic state machine that recovers a canonical pipe table from
semi-structured generated text.

States:
    SEEKING_HEADER → IN_TABLE → DONE

Lines before the header row (titles, school metadata) are ignored; inside the
table, separator rows are skipped and every pipe row is shaped to the kind's
canonical columns and validated before it is kept.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Optional

from .models import DocumentKind, ParsedTable

logger = logging.getLogger(__name__)

# ─── Canonical Schemas ────────────────────────────────────────────────────────

CONCEPT_BREAKDOWN_HEADERS = [
    "Term",
    "Week",
    "Strand",
    "Sub-strand",
    "Learning Concept",
]

SCHEME_OF_WORK_HEADERS = [
    "WEEK",
    "LESSON",
    "STRAND",
    "SUB-STRAND",
    "SPECIFIC LEARNING OUTCOMES (SLO)",
    "LEARNING EXPERIENCES",
    "KEY INQUIRY QUESTION (KIQ)",
    "LEARNING RESOURCES",
    "ASSESSMENT",
    "REFLECTION",
]

DEFAULT_TERM = "Term 1"
DEFAULT_MAX_ROWS = 100

# ─── Line Patterns ────────────────────────────────────────────────────────────

# "|---|:---:|", "| --- | --- |", "-----"
SEPARATOR_PATTERN = re.compile(r"^[\|\-\s:]+$")

# A single separator cell: "---", ":--:", ""
SEPARATOR_CELL_PATTERN = re.compile(r"^[-:\s]*$")

# "W3", "3"
SHORT_WEEK_PATTERN = re.compile(r"^w?\d+$", re.IGNORECASE)

# "2", "10"
LESSON_NUMBER_PATTERN = re.compile(r"^\d+$")

# Any line that carries at least two pipes
PIPE_ROW_PATTERN = re.compile(r"\|.*\|")

# Document metadata printed above generic tables
METADATA_PATTERN = re.compile(
    r"^(SCHOOL|FACILITATOR|GRADE|SUBJECT|TERM|WEEKS|TOTAL LESSONS|CBC REFERENCE):\s",
    re.IGNORECASE,
)

# Strings emitted by the generator when it failed to produce real content
PLACEHOLDER_MARKERS = ("please regenerate", "fallback")

SCHEME_HEADER_LABELS = [
    "WEEK",
    "LESSON",
    "STRAND",
    "SUB-STRAND",
    "SPECIFIC LEARNING OUTCOMES",
]


def split_cells(line: str) -> list[str]:
    """
    Split a pipe row into trimmed cells.

    Only the empty cell produced by a leading or trailing pipe is dropped;
    empty cells in the middle of a row keep their position.
    """
    cells = [c.strip() for c in line.strip().split("|")]
    if cells and not cells[0]:
        cells = cells[1:]
    if cells and not cells[-1]:
        cells = cells[:-1]
    return cells


def is_week_like(value: str) -> bool:
    return "week" in value.lower() or bool(SHORT_WEEK_PATTERN.match(value.strip()))


def is_lesson_like(value: str) -> bool:
    return "lesson" in value.lower() or bool(LESSON_NUMBER_PATTERN.match(value.strip()))


def has_placeholder_text(value: str) -> bool:
    lower = value.lower()
    return any(marker in lower for marker in PLACEHOLDER_MARKERS)


def count_pipe_rows(text: str) -> int:
    """Number of lines that look like pipe-table rows."""
    return sum(1 for line in text.splitlines() if PIPE_ROW_PATTERN.search(line))


# ─── Schemas ──────────────────────────────────────────────────────────────────


class TableSchema:
    """Kind-specific header detection, row shaping and row validation."""

    kind: DocumentKind
    headers: list[str] = []
    min_cells: int = 0
    max_cells: int = 0

    def is_header(self, line: str) -> bool:
        raise NotImplementedError

    def shape(self, cells: list[str], default_term: str) -> list[str]:
        raise NotImplementedError

    def is_valid(self, row: list[str]) -> bool:
        raise NotImplementedError


class ConceptBreakdownSchema(TableSchema):
    """Term | Week | Strand | Sub-strand | Learning Concept"""

    kind = DocumentKind.CONCEPT_BREAKDOWN
    headers = CONCEPT_BREAKDOWN_HEADERS
    min_cells = 4
    max_cells = 6
    min_concept_length = 10

    def is_header(self, line: str) -> bool:
        if "|" not in line:
            return False
        lower = line.lower()
        has_period = "term" in lower or "week" in lower
        has_topic = "learning concept" in lower or "strand" in lower
        return has_period and has_topic

    def shape(self, cells: list[str], default_term: str) -> list[str]:
        if len(cells) == 4:
            # Term column omitted
            return [default_term] + cells
        if len(cells) == 6:
            # Leading row number or stray empty cell, else an extra trailing column
            if not cells[0] or cells[0].isdigit():
                return cells[1:]
            return cells[:5]
        return list(cells)

    def is_valid(self, row: list[str]) -> bool:
        term, week, _strand, _substrand, concept = row
        if not is_week_like(week):
            return False
        if len(concept) <= self.min_concept_length:
            return False
        if "learning concept" in concept.lower():
            return False
        if has_placeholder_text(concept):
            return False
        return True


class SchemeOfWorkSchema(TableSchema):
    """The ten-column scheme of work."""

    kind = DocumentKind.SCHEME_OF_WORK
    headers = SCHEME_OF_WORK_HEADERS
    min_cells = 10
    max_cells = 11
    min_outcome_length = 15
    min_reflection_length = 10

    def is_header(self, line: str) -> bool:
        if "|" not in line:
            return False
        upper = line.upper()
        hits = sum(1 for label in SCHEME_HEADER_LABELS if label in upper)
        return hits >= 4

    def shape(self, cells: list[str], default_term: str) -> list[str]:
        return list(cells[:10])

    def is_valid(self, row: list[str]) -> bool:
        week, lesson = row[0], row[1]
        outcomes, reflection = row[4], row[9]
        if not is_week_like(week) or not is_lesson_like(lesson):
            return False
        if len(outcomes) <= self.min_outcome_length:
            return False
        if "SPECIFIC LEARNING OUTCOMES" in outcomes.upper():
            return False
        if len(reflection) <= self.min_reflection_length:
            return False
        if reflection.upper() == "REFLECTION":
            return False
        if has_placeholder_text(outcomes):
            return False
        return True


SCHEMAS: dict[DocumentKind, TableSchema] = {
    DocumentKind.CONCEPT_BREAKDOWN: ConceptBreakdownSchema(),
    DocumentKind.SCHEME_OF_WORK: SchemeOfWorkSchema(),
}


# ─── State Machine ────────────────────────────────────────────────────────────


class TableState(Enum):
    """Internal parser states."""
    SEEKING_HEADER = "SEEKING_HEADER"
    IN_TABLE = "IN_TABLE"
    DONE = "DONE"


class TextTableParser:
    """
    Finite state machine turning raw generated text into a ParsedTable.

    Returns None when no valid row was found; callers render the text
    as markdown instead.
    """

    def __init__(
        self,
        max_rows: int = DEFAULT_MAX_ROWS,
        default_term: str = DEFAULT_TERM,
        min_generic_cell_length: int = 5,
    ):
        self.max_rows = max_rows
        self.default_term = default_term
        self.min_generic_cell_length = min_generic_cell_length
        self.state = TableState.SEEKING_HEADER
        self.headers: list[str] = []
        self.rows: list[list[str]] = []
        self.rejected_rows = 0

    def reset(self):
        """Reset the state machine for a fresh parsing run."""
        self.state = TableState.SEEKING_HEADER
        self.headers = []
        self.rows = []
        self.rejected_rows = 0

    def parse(self, text: str, kind: DocumentKind) -> Optional[ParsedTable]:
        """Parse text into the canonical table for `kind`."""
        if kind == DocumentKind.GENERIC:
            return self.parse_generic(text)

        schema = SCHEMAS[kind]
        self.reset()

        for line in self._lines(text):
            if self.state == TableState.DONE:
                break
            self._process_line(line, schema)

        if not self.rows:
            logger.debug(
                f"No {kind.value} rows found "
                f"(header found: {self.state != TableState.SEEKING_HEADER}, "
                f"rejected: {self.rejected_rows})"
            )
            return None

        logger.info(
            f"Parsed {len(self.rows)} {kind.value} rows "
            f"({self.rejected_rows} rejected)"
        )
        return ParsedTable(headers=list(schema.headers), rows=self.rows)

    def parse_generic(self, text: str) -> Optional[ParsedTable]:
        """
        Kind-agnostic parse: the first pipe row with more than two cells
        is the header, later rows are padded or truncated to its width.
        """
        self.reset()

        for line in self._lines(text):
            if self.state == TableState.DONE:
                break
            self._process_generic_line(line)

        if not self.rows:
            return None

        logger.info(
            f"Parsed generic table: {len(self.headers)} columns, "
            f"{len(self.rows)} rows"
        )
        return ParsedTable(headers=self.headers, rows=self.rows)

    @staticmethod
    def _lines(text: str) -> list[str]:
        return [
            line.strip()
            for line in re.split(r"\r?\n", text or "")
            if line.strip()
        ]

    def _process_line(self, line: str, schema: TableSchema):
        """Apply one line to the kind-specific machine."""

        # ─── SEEKING_HEADER: ignore titles and metadata ───
        if self.state == TableState.SEEKING_HEADER:
            if schema.is_header(line):
                logger.debug(f"Header row found: {line[:80]}")
                self.state = TableState.IN_TABLE
            return

        # ─── IN_TABLE ───
        if SEPARATOR_PATTERN.match(line):
            return

        if "|" not in line:
            return

        # Repeated header rows fail row validation below
        cells = split_cells(line)
        if not schema.min_cells <= len(cells) <= schema.max_cells:
            self.rejected_rows += 1
            return

        row = schema.shape(cells, self.default_term)
        if not schema.is_valid(row):
            self.rejected_rows += 1
            return

        self.rows.append(row)
        if len(self.rows) >= self.max_rows:
            logger.warning(f"Row cap of {self.max_rows} reached, stopping")
            self.state = TableState.DONE

    def _process_generic_line(self, line: str):
        if METADATA_PATTERN.match(line):
            return

        if "|" not in line:
            return

        cells = split_cells(line)
        if not cells:
            return

        if all(SEPARATOR_CELL_PATTERN.match(c) for c in cells):
            return

        if self.state == TableState.SEEKING_HEADER:
            if len(cells) > 2:
                self.headers = [
                    c or f"Column {i + 1}" for i, c in enumerate(cells)
                ]
                self.state = TableState.IN_TABLE
            return

        if len(cells) < 3:
            self.rejected_rows += 1
            return

        width = len(self.headers)
        row = (cells + [""] * width)[:width]
        if not any(len(c) > self.min_generic_cell_length for c in row):
            self.rejected_rows += 1
            return

        self.rows.append(row)
        if len(self.rows) >= self.max_rows:
            self.state = TableState.DONE
