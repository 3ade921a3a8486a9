"""
Content Processing
==================
Cleanup of generated document text and the single fallback chain that
decides how it is rendered:

    kind-specific table → generic table → markdown → empty
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from .models import ContentKind, DocumentKind, ParsedContent
from .table_parser import TextTableParser, count_pipe_rows

logger = logging.getLogger(__name__)

# ─── Patterns ─────────────────────────────────────────────────────────────────

MARKDOWN_BLOCK_PATTERN = re.compile(r"```markdown\s*([\s\S]*?)```")
FENCE_PATTERN = re.compile(r"```(?:markdown)?\n?")

# "| / / |" artefacts produced for empty cells
SLASH_CELLS_PATTERN = re.compile(r"\|\s*/\s*/\s*\|")

# A row of five dash-only cells
DASH_ROW_PATTERN = re.compile(r"\|\s*-\s*\|\s*-\s*\|\s*-\s*\|\s*-\s*\|\s*-\s*\|")

TABLE_SEPARATOR_PATTERN = re.compile(r"^\|[\s\-:|]+\|$")

# "SLO: 1, 3"
SLO_REFERENCE_PATTERN = re.compile(r"SLO:[ \t]*(\d+(?:[ \t]*,[ \t]*\d+)*)", re.IGNORECASE)
LEADING_NUMBER_PATTERN = re.compile(r"\d+")

TABLE_KINDS = (DocumentKind.CONCEPT_BREAKDOWN, DocumentKind.SCHEME_OF_WORK)

# A real table row carries at least this many pipes
MIN_ROW_PIPES = 5

# More pipe rows than this make the generic parser worth trying
GENERIC_TABLE_MIN_PIPE_ROWS = 3


def preprocess_content(content: Optional[str]) -> Optional[str]:
    """Unwrap a fenced markdown block and repair common cell artefacts."""
    if not content:
        return content

    processed = content
    match = MARKDOWN_BLOCK_PATTERN.search(content)
    if match and match.group(1):
        processed = match.group(1).strip()

    processed = SLASH_CELLS_PATTERN.sub("| | |", processed)
    processed = DASH_ROW_PATTERN.sub("", processed)
    return processed


def cleanup_table_cells(content: str) -> str:
    """
    Re-join table rows the generator wrapped over several lines.

    Inside a table, a pipe line with too few pipes or a plain text line is a
    continuation of the previous row and is appended to it.
    """
    cleaned: list[str] = []
    in_table = False
    last_row: Optional[int] = None

    for raw in content.split("\n"):
        line = raw.strip()

        if "|" in line and ("Term" in line or "WEEK" in line) and not in_table:
            in_table = True
            last_row = None
            cleaned.append(line)
            continue

        if TABLE_SEPARATOR_PATTERN.match(line):
            cleaned.append(line)
            continue

        if not in_table or not line:
            cleaned.append(line)
            in_table = in_table and "|" in line
            continue

        if line.count("|") >= MIN_ROW_PIPES:
            cleaned.append(line)
            last_row = len(cleaned) - 1
        elif last_row is not None:
            cleaned[last_row] = _merge_into_row(cleaned[last_row], line)
        else:
            cleaned.append(line)

    return "\n".join(cleaned)


def _merge_into_row(row: str, fragment: str) -> str:
    """Append a wrapped fragment to the last cell of a pipe row."""
    text = " ".join(p.strip() for p in fragment.split("|") if p.strip())
    if not text:
        return row
    if row.endswith("|"):
        return f"{row[:-1].rstrip()} {text} |"
    return f"{row} {text}"


def postprocess_generated_content(content: Optional[str], kind: DocumentKind) -> str:
    """Final cleanup applied to generator output before storage."""
    if not content:
        return ""

    processed = content
    if kind in TABLE_KINDS:
        processed = cleanup_table_cells(processed)

    processed = FENCE_PATTERN.sub("", processed)
    return processed.strip()


def expand_slo_references(text: str, outcomes: Sequence[str]) -> str:
    """Replace `SLO: 1, 3` with the referenced outcome texts."""
    if not outcomes:
        return text

    def _expand(match: re.Match) -> str:
        expanded = []
        for num in match.group(1).split(","):
            number = LEADING_NUMBER_PATTERN.match(num.strip())
            if not number:
                continue
            num = number.group(0)
            index = int(num) - 1
            if 0 <= index < len(outcomes):
                expanded.append(outcomes[index])
            else:
                expanded.append(f"SLO {num}")
        return "SLO: " + "; ".join(expanded)

    return SLO_REFERENCE_PATTERN.sub(_expand, text)


def parse_content(
    content: Optional[str],
    kind: DocumentKind,
    parser: Optional[TextTableParser] = None,
) -> ParsedContent:
    """
    Decide how generated content is rendered.

    Tries the kind-specific table parser, then the generic parser when the
    text has enough pipe rows, then plain markdown.
    """
    if not content or not content.strip():
        return ParsedContent(type=ContentKind.EMPTY)

    parser = parser or TextTableParser()
    text = preprocess_content(content)

    if kind in TABLE_KINDS:
        table = parser.parse(text, kind)
        if table:
            return ParsedContent(
                type=ContentKind.TABLE,
                table=table,
                parsed_by=kind.name.lower(),
            )
        logger.info(f"No {kind.value} table found, trying generic parser")

    if count_pipe_rows(text) > GENERIC_TABLE_MIN_PIPE_ROWS:
        table = parser.parse_generic(text)
        if table:
            return ParsedContent(
                type=ContentKind.TABLE,
                table=table,
                parsed_by="generic",
            )

    return ParsedContent(
        type=ContentKind.MARKDOWN,
        markdown=text.strip(),
        parsed_by="markdown",
    )
