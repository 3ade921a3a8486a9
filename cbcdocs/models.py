"""
Data Models
===========
Pydantic models for curriculum table parsing and diagram placement output.
All models are serializable to JSON for the document-generation service.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


# ─── Enums ────────────────────────────────────────────────────────────────────


class DocumentKind(str, Enum):
    """Kind of generated document; selects the canonical table schema."""
    CONCEPT_BREAKDOWN = "Lesson Concept Breakdown"
    SCHEME_OF_WORK = "Schemes of Work"
    GENERIC = "generic"


class ContentKind(str, Enum):
    """How a piece of generated content should be rendered."""
    TABLE = "table"
    MARKDOWN = "markdown"
    EMPTY = "empty"


class ImageSource(str, Enum):
    """Where a diagram image comes from."""
    CURATED = "curated"
    GENERATED = "generated"
    NONE = "none"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─── Table Models ─────────────────────────────────────────────────────────────


class ParsedTable(BaseModel):
    """
    A canonical table recovered from generated text.
    Every row has exactly as many cells as there are headers.
    """
    headers: list[str]
    rows: list[list[str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self) -> "ParsedTable":
        if not self.headers:
            raise ValueError("table must have at least one header")
        if any(not h.strip() for h in self.headers):
            raise ValueError("headers must be non-empty strings")
        width = len(self.headers)
        for i, row in enumerate(self.rows):
            if len(row) != width:
                raise ValueError(
                    f"row {i} has {len(row)} cells, expected {width}"
                )
        return self

    @computed_field
    @property
    def row_count(self) -> int:
        return len(self.rows)

    @computed_field
    @property
    def column_count(self) -> int:
        return len(self.headers)

    def column(self, header: str) -> list[str]:
        """Return all values of the named column."""
        idx = self.headers.index(header)
        return [row[idx] for row in self.rows]


class CurriculumEntry(BaseModel):
    """
    Supplementary per-lesson source data for a scheme of work.
    List fields may arrive as one combined string instead of discrete items.
    """
    strand: str = ""
    substrand: str = ""
    slo: Union[list[str], str] = Field(default_factory=list)
    learning_experiences: Union[list[str], str] = Field(default_factory=list)
    key_inquiry_questions: Union[list[str], str] = Field(default_factory=list)
    resources: Union[list[str], str] = Field(default_factory=list)


class ParsedContent(BaseModel):
    """Result of the content dispatch chain."""
    type: ContentKind
    table: Optional[ParsedTable] = None
    markdown: str = ""
    parsed_by: str = Field(
        default="none",
        description="Stage of the fallback chain that produced this result"
    )


class TableReport(BaseModel):
    """Post-reconciliation validation report for a table."""
    kind: DocumentKind
    row_count: int = 0
    column_count: int = 0
    expected_columns: int = 0
    empty_cells: dict[str, int] = Field(default_factory=dict)
    placeholder_rows: list[int] = Field(default_factory=list)
    duplicate_lessons: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def total_empty_cells(self) -> int:
        return sum(self.empty_cells.values())

    @computed_field
    @property
    def completeness(self) -> float:
        total = self.row_count * self.column_count
        if total == 0:
            return 0.0
        return round((total - self.total_empty_cells) / total * 100, 2)


# ─── Diagram Models ───────────────────────────────────────────────────────────


class DiagramPlaceholder(BaseModel):
    """An inline `[DIAGRAM: {...}]` request found in generated content."""
    model_config = ConfigDict(frozen=True)

    raw_span: str = Field(description="Exact source text of the placeholder")
    description: str
    caption: str = ""
    context: Optional[str] = None
    week: Optional[str] = None
    concept_index: Optional[int] = None


class Concept(BaseModel):
    """A labelled learning point that diagrams are matched against."""
    label: str
    week: str = ""
    index: int = 0


class ImageCandidate(BaseModel):
    """A file in a local diagram folder."""
    model_config = ConfigDict(frozen=True)

    filename: str = Field(description="Original on-disk filename, untouched")
    normalized_tokens: frozenset[str] = Field(default_factory=frozenset)


class MatchResult(BaseModel):
    candidate: ImageCandidate
    score: float = Field(ge=0, le=100)


class RoutingDecision(BaseModel):
    """Which image source to try first for a topic."""
    primary_source: ImageSource
    fallback_source: ImageSource = ImageSource.NONE
    reason: str
    confidence: Confidence

    @computed_field
    @property
    def sources(self) -> list[ImageSource]:
        """Primary then fallback, without NONE."""
        return [
            s for s in (self.primary_source, self.fallback_source)
            if s != ImageSource.NONE
        ]


class ImageResult(BaseModel):
    """A concrete image chosen for a placeholder."""
    image_url: str
    source: str
    license: str = ""
    attribution: str = ""
    score: Optional[float] = None
    filename: Optional[str] = None


class NoMatchGuidance(BaseModel):
    """Actionable hint returned when no local image qualifies."""
    reason: str
    suggested_path: str
    suggested_filename: str
    best_score: float = 0.0


# ─── Placement Models ─────────────────────────────────────────────────────────


class PlacedDiagram(BaseModel):
    figure_number: int = Field(ge=1)
    caption: str
    image_url: str
    source: str
    score: Optional[float] = None
    week: Optional[str] = None


class PlacementStats(BaseModel):
    """Summary statistics of one placement pass."""
    total: int = 0
    attempted: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    removed_leftovers: int = 0
    match_scores: list[float] = Field(default_factory=list, exclude=True)

    @computed_field
    @property
    def average_match_score(self) -> float:
        if not self.match_scores:
            return 0.0
        return round(sum(self.match_scores) / len(self.match_scores), 2)


class PlacementResult(BaseModel):
    """
    Output of a placement pass: final content plus a manifest of
    every diagram that was substituted.
    """
    content: str
    diagrams: list[PlacedDiagram] = Field(default_factory=list)
    stats: PlacementStats = Field(default_factory=PlacementStats)
    guidance: list[NoMatchGuidance] = Field(
        default_factory=list,
        description="Where to add local images for placeholders that failed"
    )
