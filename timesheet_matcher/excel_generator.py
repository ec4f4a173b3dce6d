"""
Excel report generator for the Timesheet Ticket Matcher.

Generates a review workbook of matching results with:
- Bold headers
- Fixed column widths
- Hierarchical sorting
- Status highlighting
"""

import logging
from pathlib import Path
from typing import Any, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from .config import OutputConfig
from .models import EntryStatus, ProcessedEntry


logger = logging.getLogger(__name__)


class ExcelGeneratorError(Exception):
    """Error during Excel generation."""
    pass


COLUMN_CONFIG = [
    {"key": "task", "header": "Task", "width": 45},
    {"key": "project", "header": "Project", "width": 16},
    {"key": "status", "header": "Status", "width": 16},
    {"key": "ticket", "header": "Ticket", "width": 14},
    {"key": "summary", "header": "Ticket Summary", "width": 45},
    {"key": "confidence", "header": "Confidence", "width": 12},
    {"key": "method", "header": "Method", "width": 16},
    {"key": "started", "header": "Started", "width": 16},
    {"key": "done", "header": "Done", "width": 16},
    {"key": "lasted", "header": "Lasted", "width": 12},
]

STATUS_ORDER = {
    EntryStatus.AUTO_ASSIGNED: 0,
    EntryStatus.NEEDS_SELECTION: 1,
    EntryStatus.UNMAPPED: 2,
    EntryStatus.SKIPPED: 3,
}


def sort_entries(entries: Sequence[ProcessedEntry]) -> list[ProcessedEntry]:
    """
    Sort entries hierarchically for review.

    Sorting order:
    1. status (auto-assigned, needs-selection, unmapped, skipped)
    2. project_identifier (entries without one last)
    3. original_task
    """
    return sorted(
        entries,
        key=lambda e: (
            STATUS_ORDER[e.status],
            e.project_identifier is None,
            e.project_identifier or "",
            e.original_task,
        )
    )


def entry_to_row(entry: ProcessedEntry) -> list[Any]:
    """
    Convert a ProcessedEntry to a row of values.

    The ticket columns show the selected ticket, or the top candidate when
    nothing has been selected yet.

    Returns:
        List of cell values matching COLUMN_CONFIG order.
    """
    top = entry.matches[0] if entry.matches else None
    ticket = entry.selected_ticket or (top.ticket if top else None)
    time_info = entry.time_info

    return [
        entry.original_task,
        entry.project_identifier or "",
        entry.status.value,
        ticket.key if ticket else "",
        ticket.summary if ticket else "",
        round(entry.confidence, 2) if entry.confidence is not None else None,
        top.method.value if top else "",
        time_info.started if time_info and time_info.started else "",
        time_info.done if time_info and time_info.done else "",
        time_info.lasted if time_info and time_info.lasted else "",
    ]


class ExcelReportGenerator:
    """
    Generator for formatted Excel reports.

    Produces a review sheet with:
    - Styled headers (bold, colored background)
    - Configured column widths
    - Text wrapping for long content
    - Status colored rows
    """

    # Style configuration
    HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
    HEADER_FILL = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
    HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center", wrap_text=True)

    CELL_ALIGNMENT = Alignment(vertical="top", wrap_text=True)
    CELL_BORDER = Border(
        left=Side(style="thin", color="D0D0D0"),
        right=Side(style="thin", color="D0D0D0"),
        top=Side(style="thin", color="D0D0D0"),
        bottom=Side(style="thin", color="D0D0D0"),
    )

    STATUS_FILLS = {
        EntryStatus.AUTO_ASSIGNED: PatternFill(
            start_color="E2EFDA", end_color="E2EFDA", fill_type="solid"
        ),
        EntryStatus.NEEDS_SELECTION: PatternFill(
            start_color="FFF2CC", end_color="FFF2CC", fill_type="solid"
        ),
        EntryStatus.UNMAPPED: PatternFill(
            start_color="FCE4D6", end_color="FCE4D6", fill_type="solid"
        ),
        EntryStatus.SKIPPED: PatternFill(
            start_color="F2F2F2", end_color="F2F2F2", fill_type="solid"
        ),
    }

    def __init__(self, config: OutputConfig):
        """
        Initialize the generator.

        Args:
            config: Output configuration with file paths.
        """
        self._config = config

    def generate(self, entries: Sequence[ProcessedEntry]) -> Path:
        """
        Generate an Excel report from processed entries.

        Args:
            entries: Classified todo entries.

        Returns:
            Path to the generated Excel file.

        Raises:
            ExcelGeneratorError: If report generation fails.
        """
        try:
            sorted_entries = sort_entries(entries)
            logger.info(f"Sorted {len(sorted_entries)} entries for report")

            wb = Workbook()
            ws = wb.active
            ws.title = "Ticket Matches"

            self._write_headers(ws)
            self._write_data(ws, sorted_entries)
            self._apply_column_widths(ws)

            # Freeze header row
            ws.freeze_panes = "A2"

            self._config.output_dir.mkdir(parents=True, exist_ok=True)

            output_path = self._config.report_path
            wb.save(output_path)

            logger.info(f"Excel report saved to: {output_path}")
            return output_path

        except Exception as e:
            logger.error(f"Failed to generate Excel report: {e}")
            raise ExcelGeneratorError(f"Report generation failed: {e}") from e

    def _write_headers(self, ws: Worksheet) -> None:
        """Write and style header row."""
        for col_idx, col_config in enumerate(COLUMN_CONFIG, 1):
            cell = ws.cell(row=1, column=col_idx, value=col_config["header"])
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = self.HEADER_ALIGNMENT
            cell.border = self.CELL_BORDER

        ws.row_dimensions[1].height = 30

    def _write_data(self, ws: Worksheet, entries: Sequence[ProcessedEntry]) -> None:
        """Write data rows colored by status."""
        for row_idx, entry in enumerate(entries, 2):
            fill = self.STATUS_FILLS[entry.status]

            for col_idx, value in enumerate(entry_to_row(entry), 1):
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                cell.alignment = self.CELL_ALIGNMENT
                cell.border = self.CELL_BORDER
                cell.fill = fill

    def _apply_column_widths(self, ws: Worksheet) -> None:
        """Apply column widths from configuration."""
        for col_idx, col_config in enumerate(COLUMN_CONFIG, 1):
            column_letter = get_column_letter(col_idx)
            ws.column_dimensions[column_letter].width = col_config["width"]


def generate_report(
    entries: Sequence[ProcessedEntry],
    config: OutputConfig
) -> Path:
    """
    Convenience function to generate an Excel report.

    Args:
        entries: Processed entries.
        config: Output configuration.

    Returns:
        Path to generated report.
    """
    generator = ExcelReportGenerator(config)
    return generator.generate(entries)
