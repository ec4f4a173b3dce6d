"""
Deterministic keyword scoring and candidate filtering.

Tickets are first filtered for eligibility (issue type, status, project
tag) and then scored by plain substring keyword overlap with the task text.
Nothing here is random: the same inputs always give the same ranking, and
tickets with equal scores keep their input order.
"""

import logging
import re
from typing import Iterable, Optional, Sequence

from .models import PreliminaryTask, ScoredTicket, TicketRecord, TodoEntry


logger = logging.getLogger(__name__)


EXCLUDED_ISSUE_TYPES = frozenset({"story", "epic", "feature story"})
EXCLUDED_STATUSES = frozenset({
    "done",
    "deployed",
    "closed",
    "cancelled",
    "rollback",
    "ready to deploy",
})

# Best keyword score must exceed this to count as a match at all
KEYWORD_MATCH_FLOOR = 0.2

# Words this short never contribute to a score
MIN_KEYWORD_LENGTH = 3

DEFAULT_PRELIMINARY_LIMIT = 5

BRACKET_PATTERN = re.compile(r"\[([^\]]+)\]")
WHITESPACE_PATTERN = re.compile(r"\s+")


def _normalize_tag(value: str) -> str:
    return WHITESPACE_PATTERN.sub("", value.lower())


def matches_project_identifier(
    ticket: TicketRecord,
    project_identifier: Optional[str] = None,
) -> bool:
    """
    Check whether a ticket carries a bracketed tag for the given project.

    "[mydebit]" on a task matches tickets tagged "[MyDebit]" or
    "[Acq MyDebit]". Without a project identifier every ticket matches.
    """
    if not project_identifier:
        return True

    project = _normalize_tag(project_identifier)
    if not project:
        return True

    for tag in BRACKET_PATTERN.findall(ticket.search_text):
        content = _normalize_tag(tag)
        if content and (project in content or content in project):
            return True
    return False


def is_excluded(ticket: TicketRecord) -> bool:
    """Check if a ticket's type or status rules it out of matching."""
    return (
        ticket.issue_type.lower() in EXCLUDED_ISSUE_TYPES
        or ticket.status.lower() in EXCLUDED_STATUSES
    )


def is_eligible(
    ticket: TicketRecord,
    project_identifier: Optional[str] = None,
) -> bool:
    """Check if a ticket can be matched against a task."""
    return not is_excluded(ticket) and matches_project_identifier(ticket, project_identifier)


def filter_eligible(
    tickets: Iterable[TicketRecord],
    project_identifier: Optional[str] = None,
) -> list[TicketRecord]:
    """Keep the eligible tickets for a single task, in input order."""
    return [ticket for ticket in tickets if is_eligible(ticket, project_identifier)]


def filter_universe(
    tickets: Iterable[TicketRecord],
    project_identifiers: Iterable[Optional[str]],
) -> list[TicketRecord]:
    """
    Build the shared ticket universe for a batch of tasks.

    When any task has a project identifier, only tickets matching at least
    one of the batch's identifiers are kept.
    """
    identifiers = [identifier for identifier in project_identifiers if identifier]
    relevant = []
    for ticket in tickets:
        if is_excluded(ticket):
            continue
        if identifiers and not any(
            matches_project_identifier(ticket, identifier) for identifier in identifiers
        ):
            continue
        relevant.append(ticket)
    return relevant


def keyword_score(task: str, ticket: TicketRecord) -> float:
    """
    Score a ticket against a task by keyword overlap.

    Every whitespace separated word counts towards the total, but only words
    of three or more characters can hit.

    Returns:
        Fraction of task words found in the ticket summary or description.
    """
    words = task.lower().split()
    if not words:
        return 0.0

    search_text = ticket.search_text
    hits = sum(
        1 for word in words
        if len(word) >= MIN_KEYWORD_LENGTH and word in search_text
    )
    return hits / len(words)


def best_keyword_match(
    task: str,
    tickets: Sequence[TicketRecord],
    project_identifier: Optional[str] = None,
) -> Optional[ScoredTicket]:
    """
    Find the single best keyword match for a task.

    The first ticket reaching the top score wins. Scores at or below
    KEYWORD_MATCH_FLOOR are not considered a match.
    """
    best: Optional[TicketRecord] = None
    best_score = 0.0

    for ticket in filter_eligible(tickets, project_identifier):
        score = keyword_score(task, ticket)
        if score > best_score:
            best_score = score
            best = ticket

    if best is None or best_score <= KEYWORD_MATCH_FLOOR:
        return None
    return ScoredTicket(ticket=best, score=best_score)


def top_keyword_matches(
    task: str,
    tickets: Sequence[TicketRecord],
    limit: int = DEFAULT_PRELIMINARY_LIMIT,
    project_identifier: Optional[str] = None,
) -> list[ScoredTicket]:
    """
    Rank eligible tickets for a task by keyword score.

    Args:
        task: Task description.
        tickets: Ticket universe.
        limit: Maximum number of matches to keep.
        project_identifier: Optional project tag restricting the tickets.

    Returns:
        Tickets with a positive score, best first, ties in input order.
    """
    scored = []
    for ticket in filter_eligible(tickets, project_identifier):
        score = keyword_score(task, ticket)
        if score > 0:
            scored.append(ScoredTicket(ticket=ticket, score=score))

    # sorted() is stable, so equal scores keep universe order
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    return ranked[:limit]


def rank_preliminary_matches(
    entries: Sequence[TodoEntry],
    tickets: Sequence[TicketRecord],
    limit: int = DEFAULT_PRELIMINARY_LIMIT,
) -> list[PreliminaryTask]:
    """
    Compute keyword candidates for every entry.

    Args:
        entries: Parsed todo entries.
        tickets: Ticket universe shared by all entries.
        limit: Candidates kept per entry.

    Returns:
        One PreliminaryTask per entry, in the same order.
    """
    logger.info(f"Getting preliminary keyword matches for {len(entries)} tasks")

    ranked = [
        PreliminaryTask(
            task=entry.task,
            project_identifier=entry.project_identifier,
            preliminary_matches=top_keyword_matches(
                entry.task,
                tickets,
                limit=limit,
                project_identifier=entry.project_identifier,
            ),
        )
        for entry in entries
    ]

    with_candidates = sum(1 for item in ranked if item.preliminary_matches)
    logger.debug(f"Preliminary matches found for {with_candidates}/{len(ranked)} tasks")
    return ranked
