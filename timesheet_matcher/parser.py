"""
Todo list parser.

Recognizes two line shapes and silently drops everything else:

    ✔ [project] Task description @started(24-01-02 10:00) @done(...) @lasted(1h0m0s)
    - [project] Task description
    ☐ Task description
"""

import logging
import re
from typing import Optional

from .models import TimeInfo, TodoEntry


logger = logging.getLogger(__name__)


COMPLETED_PATTERN = re.compile(r"^✔\s+(.+)$")
INCOMPLETE_PATTERN = re.compile(r"^[-☐]\s+(.+)$")
PROJECT_PATTERN = re.compile(r"^\[([^\]]+)\]\s*(.+)$")
ANNOTATION_PATTERN = re.compile(r"\s*@(?:started|done|lasted)\([^)]*\)")

STARTED_PATTERN = re.compile(r"@started\(([^)]+)\)")
DONE_PATTERN = re.compile(r"@done\(([^)]+)\)")
LASTED_PATTERN = re.compile(r"@lasted\(([^)]+)\)")


def split_project_identifier(task: str) -> tuple[str, Optional[str]]:
    """
    Split a leading ``[project]`` tag off a task description.

    Args:
        task: Trimmed task text.

    Returns:
        Tuple of (task, project_identifier). The task keeps its brackets
        when nothing would remain after removing the tag.
    """
    match = PROJECT_PATTERN.match(task)
    if not match:
        return task, None

    project_identifier = match.group(1).strip() or None
    remainder = match.group(2).strip()
    if not remainder:
        return task, project_identifier
    return remainder, project_identifier


def _extract_time_info(line: str) -> Optional[TimeInfo]:
    """Collect @started/@done/@lasted annotations, if any."""
    started = STARTED_PATTERN.search(line)
    done = DONE_PATTERN.search(line)
    lasted = LASTED_PATTERN.search(line)

    time_info = TimeInfo(
        started=started.group(1) if started else None,
        done=done.group(1) if done else None,
        lasted=lasted.group(1) if lasted else None,
    )
    return None if time_info.is_empty() else time_info


def parse_todo_line(line: str) -> Optional[TodoEntry]:
    """
    Parse a single todo line.

    Args:
        line: Raw line of text.

    Returns:
        TodoEntry for a recognized line, None otherwise.
    """
    trimmed = line.strip()
    if not trimmed:
        return None

    completed = COMPLETED_PATTERN.match(trimmed)
    if completed:
        task = ANNOTATION_PATTERN.sub("", completed.group(1)).strip()
        if not task:
            return None
        task, project_identifier = split_project_identifier(task)
        return TodoEntry(
            original_line=trimmed,
            task=task,
            project_identifier=project_identifier,
            is_completed=True,
            time_info=_extract_time_info(trimmed),
        )

    incomplete = INCOMPLETE_PATTERN.match(trimmed)
    if incomplete:
        task = incomplete.group(1).strip()
        if not task:
            return None
        task, project_identifier = split_project_identifier(task)
        return TodoEntry(
            original_line=trimmed,
            task=task,
            project_identifier=project_identifier,
            is_completed=False,
        )

    return None


def parse_todo_content(content: str) -> list[TodoEntry]:
    """
    Parse a whole todo document.

    Args:
        content: Multi-line todo text.

    Returns:
        Entries for every recognized line, in input order.
    """
    entries = [
        entry
        for entry in (parse_todo_line(line) for line in content.splitlines())
        if entry is not None
    ]
    logger.debug(f"Parsed {len(entries)} todo entries")
    return entries
