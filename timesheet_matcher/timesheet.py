"""
Timesheet lines: rendering processed entries and logging them as worklogs.

A rendered line looks like::

    [PROJ-123] Fix login timeout @started(24-01-02 10:00) @done(24-01-02 11:00) @lasted(1h0m0s)

The same format is parsed back when worklogs are submitted to Jira.
"""

import logging
import re
import time
from datetime import datetime
from typing import Callable, Optional, Sequence

from .data_sources import DataSourceError, JiraClient
from .models import (
    EntryStatus,
    FailedWorkLog,
    ProcessedEntry,
    WorkLogEntry,
    WorklogSubmissionReport,
)


logger = logging.getLogger(__name__)


TIMESHEET_LINE_PATTERN = re.compile(
    r"\[([A-Z]+-\d+)\](?:\[([^\]]+)\])?\s*(.*?)\s@started\((.*?)\)\s@done\((.*?)\)\s@lasted\((.*?)\)"
)
DURATION_PATTERN = re.compile(r"(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?")

# Jira expects yyyy-MM-dd'T'HH:mm:ss.SSSZ
JIRA_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.000%z"
STARTED_FORMATS = ("%y-%m-%d %H:%M", "%Y-%m-%d %H:%M")

# Pause between worklog submissions
SUBMISSION_DELAY = 0.1


def render_entry(entry: ProcessedEntry) -> str:
    """
    Render one processed entry as a timesheet line.

    Args:
        entry: Classified entry.

    Returns:
        ``[KEY] task``, ``[SKIPPED] task`` or ``[UNMAPPED] task`` followed by
        any time annotations.
    """
    if entry.selected_ticket is not None:
        line = f"[{entry.selected_ticket.key}] {entry.original_task}"
    elif entry.status == EntryStatus.SKIPPED:
        line = f"[SKIPPED] {entry.original_task}"
    else:
        line = f"[UNMAPPED] {entry.original_task}"

    if entry.time_info:
        if entry.time_info.started:
            line += f" @started({entry.time_info.started})"
        if entry.time_info.done:
            line += f" @done({entry.time_info.done})"
        if entry.time_info.lasted:
            line += f" @lasted({entry.time_info.lasted})"

    return line


def render_timesheet(entries: Sequence[ProcessedEntry]) -> list[str]:
    """Render every entry, preserving order."""
    return [render_entry(entry) for entry in entries]


def parse_duration(duration: str) -> int:
    """
    Convert a duration like ``1h2m3s`` to seconds.

    Unrecognized text counts as zero.
    """
    match = DURATION_PATTERN.match(duration.strip())
    if not match:
        return 0
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _parse_started(value: str) -> Optional[datetime]:
    for fmt in STARTED_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt)
        except ValueError:
            continue
    return None


def parse_timesheet_line(line: str) -> Optional[WorkLogEntry]:
    """
    Parse a rendered timesheet line into a worklog entry.

    Accepts both ``[KEY] comment ...`` and ``[KEY][project] comment ...``.
    Lines without a ticket key, comment, start time or duration are not
    loggable and return None.
    """
    match = TIMESHEET_LINE_PATTERN.search(line)
    if not match:
        return None

    issue_key, _project, comment, started_str, _done_str, lasted = match.groups()
    if not issue_key or not comment or not started_str or not lasted:
        return None

    started = _parse_started(started_str)
    if started is None:
        logger.error(f"Failed to parse date: {started_str}")
        return None

    return WorkLogEntry(
        issue_key=issue_key,
        comment=comment,
        started=started.astimezone().strftime(JIRA_TIMESTAMP_FORMAT),
        duration_seconds=parse_duration(lasted),
        original_line=line.strip(),
    )


def parse_timesheet_entries(content: str) -> list[WorkLogEntry]:
    """Parse every loggable line of a timesheet."""
    entries = []
    for line in content.splitlines():
        if not line.strip():
            continue
        entry = parse_timesheet_line(line)
        if entry:
            entries.append(entry)
    return entries


def log_work_entries(
    client: JiraClient,
    entries: Sequence[WorkLogEntry],
    delay: float = SUBMISSION_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> WorklogSubmissionReport:
    """
    Submit worklogs one at a time.

    Failures are collected per entry rather than raised, so one bad ticket
    does not stop the rest of the timesheet.

    Args:
        client: An open JiraClient.
        entries: Parsed worklog entries.
        delay: Seconds to wait before each submission.
        sleep: Sleep function.

    Returns:
        Report of successful and failed submissions.
    """
    report = WorklogSubmissionReport()

    for entry in entries:
        sleep(delay)
        try:
            client.submit_worklog(
                entry.issue_key,
                comment=entry.comment,
                started=entry.started,
                duration_seconds=entry.duration_seconds,
            )
            report.successful.append(entry)
            logger.info(f"Logged work for {entry.issue_key}: {entry.comment}")
        except DataSourceError as e:
            logger.error(f"Failed to log work for {entry.issue_key}: {e}")
            report.failed.append(FailedWorkLog(entry=entry, error=str(e) or "Unknown error"))

    logger.info(
        f"Worklog submission complete: {len(report.successful)} succeeded, "
        f"{len(report.failed)} failed"
    )
    return report
