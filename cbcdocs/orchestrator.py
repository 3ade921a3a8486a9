"""
Diagram Placement Orchestrator
==============================
Replaces `[DIAGRAM: {...}]` placeholders with concrete figures.

For each placeholder, in order of appearance:
    1. Local image library (token-overlap match, threshold 40%)
    2. Remote sources in the router's primary/fallback order
    3. Nothing qualified → the placeholder is removed

Placeholders beyond `max_diagrams`, duplicates and malformed ones never reach
the final content.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .concepts import format_concept_caption
from .local_images import LocalImageLibrary
from .models import (
    Concept,
    DiagramPlaceholder,
    ImageResult,
    ImageSource,
    NoMatchGuidance,
    PlacedDiagram,
    PlacementResult,
    PlacementStats,
)
from .placeholders import scan, strip_leftovers
from .remote_resolver import RemoteDiagramResolver
from .router import route
from .session import DiagramSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIAGRAMS = 5

FIGURE_TEMPLATE = "\n\n![{alt}]({url})\n\n*{caption}*\n\n{annotation}\n\n"

EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass
class PlacementContext:
    """Who the placement pass is for."""
    document_id: str
    grade: str
    subject: str
    session: DiagramSession
    substrand: str = ""


# Hook for an on-demand image generator (placeholder, context) → result
ImageGenerator = Callable[
    [DiagramPlaceholder, PlacementContext], Awaitable[Optional[ImageResult]]
]


def render_figure(result: ImageResult, caption: str, alt: str) -> str:
    """Markdown for one substituted figure."""
    if result.score is not None:
        annotation = f"*Auto-matched with {round(result.score)}% similarity*"
    elif result.attribution:
        annotation = f"*Source: {result.attribution}"
        annotation += f" ({result.license})*" if result.license else "*"
    else:
        annotation = f"*Source: {result.source}*"

    return FIGURE_TEMPLATE.format(
        alt=alt.replace("[", "(").replace("]", ")"),
        url=result.image_url,
        caption=caption,
        annotation=annotation,
    )


class DiagramPlacementOrchestrator:
    """
    Local-first diagram placement with remote fallback.

    Routing between curated and generated sources only applies when an
    image generator is configured; otherwise the curated resolver is the
    only remote source.
    """

    def __init__(
        self,
        library: LocalImageLibrary,
        resolver: Optional[RemoteDiagramResolver] = None,
        generator: Optional[ImageGenerator] = None,
        max_diagrams: int = DEFAULT_MAX_DIAGRAMS,
    ):
        self.library = library
        self.resolver = resolver
        self.generator = generator
        self.max_diagrams = max_diagrams

    async def place(
        self,
        content: str,
        concepts: Optional[list[Concept]],
        context: PlacementContext,
    ) -> PlacementResult:
        concepts = concepts or []
        placeholders = scan(content)
        stats = PlacementStats(total=len(placeholders))
        diagrams: list[PlacedDiagram] = []
        guidance: list[NoMatchGuidance] = []
        registry = context.session.registry
        seen: set[str] = set()

        limit = min(self.max_diagrams, len(placeholders))
        logger.info(
            f"Placing diagrams for {context.document_id}: "
            f"{len(placeholders)} placeholders, processing {limit}"
        )

        for position, placeholder in enumerate(placeholders[:limit]):
            stats.attempted += 1

            key = placeholder.description.strip().lower()
            if key in seen:
                logger.info(f"Skipping duplicate diagram: {placeholder.description[:50]}")
                stats.skipped += 1
                content = content.replace(placeholder.raw_span, "", 1)
                continue
            seen.add(key)

            concept = self._concept_for(placeholder, position, concepts)
            result = await self._obtain(placeholder, context)

            if result is None:
                stats.failed += 1
                content = content.replace(placeholder.raw_span, "", 1)
                guidance.append(await self.library.guidance(
                    placeholder.description, context.grade, context.subject
                ))
                continue

            number = len(diagrams) + 1
            week = placeholder.week or (concept.week if concept else None)
            label = (
                placeholder.caption
                or (concept.label if concept else "")
                or placeholder.description
            )
            caption = format_concept_caption(
                Concept(label=label, week=week or ""), number
            )

            content = content.replace(
                placeholder.raw_span,
                render_figure(result, caption, alt=label),
                1,
            )
            registry.mark_used(context.document_id, result.image_url)

            stats.successful += 1
            if result.score is not None:
                stats.match_scores.append(result.score)
            diagrams.append(PlacedDiagram(
                figure_number=number,
                caption=caption,
                image_url=result.image_url,
                source=result.source,
                score=result.score,
                week=week,
            ))

        content, leftovers = strip_leftovers(content)
        stats.removed_leftovers = leftovers
        content = EXCESS_BLANK_LINES.sub("\n\n", content).strip()

        logger.info(
            f"Diagram placement complete: {stats.successful}/{stats.total} placed, "
            f"{stats.failed} failed, {stats.skipped} skipped, "
            f"{stats.removed_leftovers} leftovers removed"
        )
        return PlacementResult(
            content=content,
            diagrams=diagrams,
            stats=stats,
            guidance=guidance,
        )

    @staticmethod
    def _concept_for(
        placeholder: DiagramPlaceholder,
        position: int,
        concepts: list[Concept],
    ) -> Optional[Concept]:
        """Concept named by `conceptNumber` (1-based), else by position."""
        if placeholder.concept_index is not None:
            for concept in concepts:
                if concept.index == placeholder.concept_index - 1:
                    return concept
        if position < len(concepts):
            return concepts[position]
        return None

    async def _obtain(
        self,
        placeholder: DiagramPlaceholder,
        context: PlacementContext,
    ) -> Optional[ImageResult]:
        registry = context.session.registry

        local = await self.library.find_image(
            placeholder.description,
            context.grade,
            context.subject,
            exclude_urls=registry.used(context.document_id),
        )
        if local:
            return local

        if self.generator is None:
            sources = [ImageSource.CURATED]
        else:
            decision = route(
                placeholder.description,
                context.subject,
                context.grade,
                context.substrand,
            )
            logger.debug(f"Routing decision: {decision.reason} ({decision.confidence.value})")
            sources = decision.sources

        for source in sources:
            result = None
            if source == ImageSource.CURATED and self.resolver is not None:
                result = await self.resolver.resolve(
                    topic=placeholder.description,
                    subject=context.subject,
                    grade=context.grade,
                    keywords=None,
                    document_id=context.document_id,
                    session=context.session,
                )
            elif source == ImageSource.GENERATED and self.generator is not None:
                result = await self.generator(placeholder, context)

            if result:
                return result

        return None
