"""
Table Validator
===============
Post-reconciliation validation and reporting.

For every reconciled table, reports:
    - Row and column counts against the canonical schema
    - Empty cells per column
    - Rows still carrying generator placeholder text
    - Duplicate (week, lesson) pairs in schemes of work
"""

from __future__ import annotations

import logging
from collections import Counter

from .models import DocumentKind, ParsedTable, TableReport
from .table_parser import (
    CONCEPT_BREAKDOWN_HEADERS,
    SCHEME_OF_WORK_HEADERS,
    has_placeholder_text,
)

logger = logging.getLogger(__name__)

CANONICAL_WIDTH = {
    DocumentKind.CONCEPT_BREAKDOWN: len(CONCEPT_BREAKDOWN_HEADERS),
    DocumentKind.SCHEME_OF_WORK: len(SCHEME_OF_WORK_HEADERS),
}


class TableValidator:
    """
    Validates a reconciled table and produces a report.
    """

    def validate(self, table: ParsedTable, kind: DocumentKind) -> TableReport:
        report = TableReport(
            kind=kind,
            row_count=table.row_count,
            column_count=table.column_count,
            expected_columns=CANONICAL_WIDTH.get(kind, table.column_count),
        )

        if not table.rows:
            logger.warning("No rows to validate")
            return report

        empty: dict[str, int] = {}
        for row_index, row in enumerate(table.rows):
            for header, cell in zip(table.headers, row):
                if not cell.strip():
                    empty[header] = empty.get(header, 0) + 1
            if any(has_placeholder_text(cell) for cell in row):
                report.placeholder_rows.append(row_index)
        report.empty_cells = empty

        if kind == DocumentKind.SCHEME_OF_WORK:
            pairs = Counter(f"{row[0]} / {row[1]}" for row in table.rows)
            report.duplicate_lessons = sorted(
                pair for pair, count in pairs.items() if count > 1
            )

        # Log summary
        logger.info("=" * 60)
        logger.info(f"TABLE REPORT: {kind.value}")
        logger.info("=" * 60)
        logger.info(f"Rows: {report.row_count}")
        logger.info(
            f"Columns: {report.column_count} (expected {report.expected_columns})"
        )
        logger.info(f"Empty Cells: {report.total_empty_cells}")
        logger.info(f"Completeness: {report.completeness}%")
        logger.info(f"Placeholder Rows: {len(report.placeholder_rows)}")
        if kind == DocumentKind.SCHEME_OF_WORK:
            logger.info(f"Duplicate Lessons: {len(report.duplicate_lessons)}")

        if report.empty_cells:
            logger.info("Empty Cells by Column:")
            for header, count in sorted(report.empty_cells.items()):
                logger.info(f"  • {header}: {count}")

        logger.info("=" * 60)

        return report
