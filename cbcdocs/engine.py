"""
Document Engine
===============
Main entry point combining table parsing, schema reconciliation, validation
and diagram placement into one pipeline.

Usage:
    engine = DocumentEngine(config)
    result = engine.process_table(text, DocumentKind.SCHEME_OF_WORK, entry)

    async with engine:
        placed = await engine.place_diagrams(content, "doc-1", "Grade 7", "Science")

Architecture:
    text → preprocess → TextTableParser → TableSchemaReconciler →
    TableValidator → TableResult (JSON)

    content → DiagramPlaceholderScanner → LocalImageLibrary →
    RemoteDiagramResolver → PlacementResult (JSON)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from . import __version__
from .concepts import concepts_from_table, select_concepts
from .content import expand_slo_references, parse_content, postprocess_generated_content
from .local_images import LocalImageLibrary, LocalImageMatcher
from .models import (
    Concept,
    ContentKind,
    CurriculumEntry,
    DocumentKind,
    ParsedContent,
    PlacementResult,
    TableReport,
)
from .orchestrator import (
    DiagramPlacementOrchestrator,
    ImageGenerator,
    PlacementContext,
)
from .reconciler import TableSchemaReconciler, as_items
from .remote_resolver import WIKIMEDIA_API_URL, RemoteDiagramResolver
from .session import DiagramSession
from .table_parser import DEFAULT_TERM, TextTableParser
from .validator import TableValidator

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class PipelineConfig:
    """Configuration for the document engine."""

    # Table parsing
    max_rows: int = 100
    default_term: str = DEFAULT_TERM
    min_generic_cell_length: int = 5

    # Reconciliation
    experience_stride: int = 2
    inquiry_stride: int = 3
    default_strand: str = ""
    default_substrand: str = ""

    # Local images
    diagrams_root: str = "diagrams"
    base_url: str = ""
    match_threshold: float = 40.0

    # Remote search
    use_remote: bool = True
    api_url: str = WIKIMEDIA_API_URL
    request_delay: float = 2.0
    request_timeout: float = 30.0
    max_file_size: int = 5 * 1024 * 1024
    max_queries: int = 12

    # Placement
    max_diagrams: int = 5

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


class TableResult(BaseModel):
    """Complete output of a table run."""
    engine_version: str = __version__
    kind: DocumentKind
    content: ParsedContent
    report: Optional[TableReport] = None
    elapsed_seconds: float = 0.0


class DocumentEngine:
    """
    Curriculum document pipeline.

    Table processing is synchronous and stateless. Diagram placement is
    async; its only state lives in the DiagramSession, which callers may
    pass in to share across documents.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        session: Optional[DiagramSession] = None,
        generator: Optional[ImageGenerator] = None,
    ):
        self.config = config or PipelineConfig()
        self._setup_logging()

        self.session = session or DiagramSession()
        self.parser = TextTableParser(
            max_rows=self.config.max_rows,
            default_term=self.config.default_term,
            min_generic_cell_length=self.config.min_generic_cell_length,
        )
        self.reconciler = TableSchemaReconciler(
            experience_stride=self.config.experience_stride,
            inquiry_stride=self.config.inquiry_stride,
            default_term=self.config.default_term,
            default_strand=self.config.default_strand,
            default_substrand=self.config.default_substrand,
        )
        self.validator = TableValidator()
        self.library = LocalImageLibrary(
            root=self.config.diagrams_root,
            base_url=self.config.base_url,
            matcher=LocalImageMatcher(threshold=self.config.match_threshold),
        )
        self.resolver: Optional[RemoteDiagramResolver] = None
        if self.config.use_remote:
            self.resolver = RemoteDiagramResolver(
                api_url=self.config.api_url,
                request_delay=self.config.request_delay,
                timeout=self.config.request_timeout,
                max_file_size=self.config.max_file_size,
                max_queries=self.config.max_queries,
            )
        self.orchestrator = DiagramPlacementOrchestrator(
            library=self.library,
            resolver=self.resolver,
            generator=generator,
            max_diagrams=self.config.max_diagrams,
        )

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        package_logger = logging.getLogger("cbcdocs")
        package_logger.setLevel(log_level)

        for handler in package_logger.handlers:
            handler.setLevel(log_level)

        # Console handler
        if not package_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            package_logger.addHandler(console)

        # File handler
        if self.config.log_file:
            Path(self.config.log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.config.log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            package_logger.addHandler(file_handler)

    async def __aenter__(self) -> "DocumentEngine":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        if self.resolver is not None:
            await self.resolver.close()

    # ─── Tables ───

    def process_table(
        self,
        text: str,
        kind: DocumentKind,
        entry: Optional[CurriculumEntry] = None,
    ) -> TableResult:
        """
        Parse, reconcile and validate generated table content.

        Never raises for unparseable text: the result falls back to
        markdown or empty content.
        """
        start_time = time.time()
        cleaned = postprocess_generated_content(text, kind)
        if entry is not None and kind == DocumentKind.SCHEME_OF_WORK:
            cleaned = expand_slo_references(cleaned, as_items(entry.slo))

        # ── Step 1: Dispatch ──────────────────────────────────────────
        content = parse_content(cleaned, kind, parser=self.parser)

        # ── Step 2: Reconcile + validate tables ───────────────────────
        report = None
        if content.type == ContentKind.TABLE:
            table_kind = kind if content.parsed_by != "generic" else DocumentKind.GENERIC
            content.table = self.reconciler.reconcile(content.table, table_kind, entry)
            report = self.validator.validate(content.table, table_kind)

        elapsed = time.time() - start_time
        logger.info(
            f"Processed {kind.value} in {elapsed:.2f}s: {content.type.value} "
            f"via {content.parsed_by}"
        )
        return TableResult(
            kind=kind,
            content=content,
            report=report,
            elapsed_seconds=round(elapsed, 3),
        )

    def process_file(
        self,
        path: str,
        kind: DocumentKind,
        entry: Optional[CurriculumEntry] = None,
    ) -> TableResult:
        """
        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Document not found: {path}")
        return self.process_table(file_path.read_text(encoding="utf-8"), kind, entry)

    # ─── Diagrams ───

    async def place_diagrams(
        self,
        content: str,
        document_id: str,
        grade: str,
        subject: str,
        concepts: Optional[list[Concept]] = None,
        substrand: str = "",
        reset: bool = True,
    ) -> PlacementResult:
        """Replace diagram placeholders; `reset` starts the document's registry afresh."""
        if reset:
            self.session.reset_document(document_id)

        context = PlacementContext(
            document_id=document_id,
            grade=grade,
            subject=subject,
            session=self.session,
            substrand=substrand,
        )
        return await self.orchestrator.place(content, concepts, context)

    def diagram_concepts(self, result: TableResult) -> list[Concept]:
        """Concepts of a processed concept breakdown worth illustrating."""
        if result.kind != DocumentKind.CONCEPT_BREAKDOWN:
            return []
        concepts = concepts_from_table(result.content.table)
        return select_concepts(concepts, self.config.max_diagrams)
