"""
Diagram Placeholder Scanner
===========================
Finds inline `[DIAGRAM: {...}]` requests in generated content and parses
their embedded JSON metadata.

A malformed placeholder is dropped with a warning; scanning always continues.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from .models import DiagramPlaceholder

logger = logging.getLogger(__name__)

# Start of every placeholder request
PLACEHOLDER_START = "[DIAGRAM:"

# Anything still looking like a placeholder after placement
LEFTOVER_PATTERN = re.compile(r"\[DIAGRAM:[^\]]*\]")

PREFIX_PATTERN = re.compile(r"^\[DIAGRAM:\s*")
SUFFIX_PATTERN = re.compile(r"\s*\]$")


def _closing_index(content: str, start: int) -> Optional[int]:
    """
    End offset of the placeholder opened at `start`, or None if unclosed.

    The JSON body is brace-balanced outside string literals and must be
    followed by `]`. Reaching another `[DIAGRAM:` before the body closes
    means this one is unclosed.
    """
    i = start + len(PLACEHOLDER_START)
    n = len(content)
    while i < n and content[i].isspace():
        i += 1
    if i >= n or content[i] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    while i < n:
        ch = content[i]
        if content.startswith(PLACEHOLDER_START, i):
            return None
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                j = i + 1
                while j < n and content[j].isspace():
                    j += 1
                return j + 1 if j < n and content[j] == "]" else None
        i += 1
    return None


def find_spans(content: str) -> list[str]:
    """Raw text of every closed placeholder, in order of appearance."""
    spans = []
    start = content.find(PLACEHOLDER_START) if content else -1
    while start != -1:
        end = _closing_index(content, start)
        if end is None:
            logger.warning(f"Unclosed diagram placeholder at offset {start}")
            start = content.find(PLACEHOLDER_START, start + len(PLACEHOLDER_START))
            continue
        spans.append(content[start:end])
        start = content.find(PLACEHOLDER_START, end)
    return spans


def _to_optional_str(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_placeholder(span: str) -> Optional[DiagramPlaceholder]:
    """Parse one raw placeholder span; None when its metadata is unusable."""
    body = SUFFIX_PATTERN.sub("", PREFIX_PATTERN.sub("", span))

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed diagram placeholder skipped: {e} in {span[:80]!r}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Diagram placeholder is not an object: {span[:80]!r}")
        return None

    description = str(data.get("description") or "").strip()
    if not description:
        logger.warning(f"Diagram placeholder without description: {span[:80]!r}")
        return None

    concept_index = data.get("conceptNumber")
    try:
        concept_index = int(concept_index) if concept_index is not None else None
    except (TypeError, ValueError):
        concept_index = None

    try:
        return DiagramPlaceholder(
            raw_span=span,
            description=description,
            caption=str(data.get("caption") or "").strip(),
            context=_to_optional_str(data.get("context")),
            week=_to_optional_str(data.get("week")),
            concept_index=concept_index,
        )
    except ValidationError as e:
        logger.warning(f"Invalid diagram placeholder metadata: {e}")
        return None


def scan(content: str) -> list[DiagramPlaceholder]:
    """Return every well-formed placeholder in order of appearance."""
    if not content:
        return []

    placeholders = []
    for span in find_spans(content):
        placeholder = parse_placeholder(span)
        if placeholder is not None:
            placeholders.append(placeholder)

    logger.debug(f"Found {len(placeholders)} diagram placeholders")
    return placeholders


def strip_leftovers(content: str) -> tuple[str, int]:
    """Remove any placeholder spans still present; returns (content, count).

    Closed spans go first, then each unclosed `[DIAGRAM: ...]` up to its own
    first `]`. Text between placeholders is never removed.
    """
    spans = find_spans(content)
    for span in spans:
        content = content.replace(span, "", 1)
    cleaned, partial = LEFTOVER_PATTERN.subn("", content)
    return cleaned, len(spans) + partial
