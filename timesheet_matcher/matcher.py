"""
Match reconciliation and confidence classification.

Ties the pipeline together:
1. Keyword-rank every task (always; it seeds the oracle and is the fallback)
2. Optionally ask the oracle for a batch answer
3. Resolve oracle ticket keys back to ticket records
4. Classify each task by confidence into a lifecycle status

No oracle failure ever fails a matching run; the worst case for a task is
an unmapped status via the keyword fallback.
"""

import logging
import uuid
from typing import Optional, Sequence

from .models import (
    BatchPrediction,
    EntryStatus,
    MatchCandidate,
    MatchingSummary,
    MatchMethod,
    OracleTaskResult,
    PredictionSource,
    PreliminaryTask,
    ProcessedEntry,
    ScoredTicket,
    TaskPrediction,
    Thresholds,
    TicketRecord,
    TodoEntry,
)
from .oracle import OracleError, TicketMatchingOracle
from .scoring import (
    DEFAULT_PRELIMINARY_LIMIT,
    KEYWORD_MATCH_FLOOR,
    best_keyword_match,
    filter_eligible,
    rank_preliminary_matches,
)


logger = logging.getLogger(__name__)


# Single-task oracle answers below this fall back to keyword matching
AI_MINIMUM_CONFIDENCE = 0.3

# Preliminary matches offered as alternatives in the keyword fallback
FALLBACK_ALTERNATIVES = 2


def classify_score(score: Optional[float], thresholds: Thresholds) -> EntryStatus:
    """
    Map a confidence score to a lifecycle status.

    A missing score counts as below the minimum. Scores between the minimum
    and the choice threshold are still unmapped.
    """
    if score is None or score < thresholds.minimum:
        return EntryStatus.UNMAPPED
    if score >= thresholds.high_confidence:
        return EntryStatus.AUTO_ASSIGNED
    if score >= thresholds.choice:
        return EntryStatus.NEEDS_SELECTION
    return EntryStatus.UNMAPPED


def _index_tickets(tickets: Sequence[TicketRecord]) -> dict[str, TicketRecord]:
    """Key lookup for the ticket universe; the first record for a key wins."""
    index: dict[str, TicketRecord] = {}
    for ticket in tickets:
        index.setdefault(ticket.key, ticket)
    return index


def resolve_oracle_result(
    task: str,
    result: OracleTaskResult,
    tickets_by_key: dict[str, TicketRecord],
    method: MatchMethod = MatchMethod.GEMINI_AI_MEGA,
) -> Optional[TaskPrediction]:
    """
    Turn an oracle answer (ticket keys) into a prediction (ticket records).

    Keys the universe does not contain are treated as no match for their
    slot. Without a resolvable best match there is no prediction.
    """
    if result.best_match is None:
        logger.info(f"AI found no confident match for task: '{task}'")
        return None

    best_ticket = tickets_by_key.get(result.best_match.ticket_key)
    if best_ticket is None:
        logger.warning(f"AI suggested ticket {result.best_match.ticket_key} not found")
        return None

    alternatives = [
        ScoredTicket(ticket=tickets_by_key[alt.ticket_key], score=alt.confidence)
        for alt in result.alternatives
        if alt.ticket_key in tickets_by_key
    ]

    logger.info(
        f"AI found match: {best_ticket.key} "
        f"(confidence: {result.best_match.confidence:.2f}) for '{task}'"
    )
    return TaskPrediction(
        task=task,
        ticket=best_ticket,
        score=result.best_match.confidence,
        method=method,
        alternatives=alternatives,
    )


def fallback_prediction(item: PreliminaryTask) -> Optional[TaskPrediction]:
    """Build a prediction from a task's preliminary keyword matches."""
    if not item.preliminary_matches:
        logger.info(f"No keyword match found for task: '{item.task}'")
        return None

    best = item.preliminary_matches[0]
    if best.score < KEYWORD_MATCH_FLOOR:
        logger.info(f"No keyword match found for task: '{item.task}'")
        return None

    logger.info(
        f"Keyword match found: {best.ticket.key} "
        f"(confidence: {best.score:.2f}) for '{item.task}'"
    )
    return TaskPrediction(
        task=item.task,
        ticket=best.ticket,
        score=best.score,
        method=MatchMethod.KEYWORD_BATCH,
        alternatives=list(item.preliminary_matches[1:1 + FALLBACK_ALTERNATIVES]),
    )


def build_processed_entry(
    entry: TodoEntry,
    prediction: Optional[TaskPrediction],
    thresholds: Thresholds,
) -> ProcessedEntry:
    """
    Classify one entry's prediction into a ProcessedEntry.

    Predictions under the minimum threshold keep their confidence but carry
    no candidates.
    """
    entry_id = str(uuid.uuid4())
    score = prediction.score if prediction else None
    status = classify_score(score, thresholds)

    if prediction is None or prediction.score < thresholds.minimum:
        return ProcessedEntry(
            id=entry_id,
            original_task=entry.task,
            project_identifier=entry.project_identifier,
            time_info=entry.time_info,
            status=status,
            confidence=score,
        )

    matches = [
        MatchCandidate(ticket=prediction.ticket, score=prediction.score, method=prediction.method),
        *(
            MatchCandidate(ticket=alt.ticket, score=alt.score, method=MatchMethod.ALTERNATIVE)
            for alt in prediction.alternatives[:FALLBACK_ALTERNATIVES]
        ),
    ]

    return ProcessedEntry(
        id=entry_id,
        original_task=entry.task,
        project_identifier=entry.project_identifier,
        time_info=entry.time_info,
        matches=matches,
        selected_ticket=prediction.ticket if status == EntryStatus.AUTO_ASSIGNED else None,
        status=status,
        confidence=score,
    )


class TicketMatcher:
    """
    Matches todo entries to tickets.

    The oracle is optional and injected; without one (or when it fails)
    every result comes from keyword matching.
    """

    def __init__(
        self,
        oracle: Optional[TicketMatchingOracle] = None,
        preliminary_limit: int = DEFAULT_PRELIMINARY_LIMIT,
    ):
        """
        Initialize the matcher.

        Args:
            oracle: Remote matching oracle, or None for keyword-only matching.
            preliminary_limit: Keyword candidates kept per task.
        """
        self._oracle = oracle
        self._preliminary_limit = preliminary_limit

    @property
    def ai_enabled(self) -> bool:
        """Whether an oracle is available."""
        return self._oracle is not None

    def batch_predict(
        self,
        entries: Sequence[TodoEntry],
        tickets: Sequence[TicketRecord],
        use_oracle: bool = True,
    ) -> BatchPrediction:
        """
        Predict the best ticket for every entry.

        Args:
            entries: Parsed todo entries.
            tickets: Ticket universe.
            use_oracle: Whether to consult the oracle.

        Returns:
            BatchPrediction with one (possibly None) prediction per entry,
            tagged with the branch that produced it.
        """
        if not entries:
            return BatchPrediction(source=PredictionSource.FALLBACK)

        preliminary = rank_preliminary_matches(entries, tickets, limit=self._preliminary_limit)

        if use_oracle and self._oracle is not None:
            try:
                logger.info(f"Using AI to process all {len(preliminary)} tasks in a single request")
                results = self._oracle.batch_find_ticket_matches(preliminary, tickets)
                tickets_by_key = _index_tickets(tickets)
                return BatchPrediction(
                    source=PredictionSource.ORACLE,
                    predictions=[
                        resolve_oracle_result(item.task, result, tickets_by_key)
                        for item, result in zip(preliminary, results)
                    ],
                )
            except OracleError as e:
                logger.error(f"AI batch matching failed, falling back to keyword matching: {e}")
        elif not use_oracle:
            logger.info(f"Keyword-only matching requested for {len(entries)} tasks")
        else:
            logger.warning(f"AI requested but not configured for {len(entries)} tasks")

        logger.info(f"Using keyword matching results for {len(entries)} tasks")
        return BatchPrediction(
            source=PredictionSource.FALLBACK,
            predictions=[fallback_prediction(item) for item in preliminary],
        )

    def match_all(
        self,
        entries: Sequence[TodoEntry],
        tickets: Sequence[TicketRecord],
        thresholds: Optional[Thresholds] = None,
        use_oracle: bool = True,
    ) -> list[ProcessedEntry]:
        """
        Match and classify every entry.

        Args:
            entries: Parsed todo entries.
            tickets: Ticket universe.
            thresholds: Classification thresholds (defaults apply when None).
            use_oracle: Whether to consult the oracle.

        Returns:
            One ProcessedEntry per entry, in input order.
        """
        thresholds = thresholds or Thresholds()
        batch = self.batch_predict(entries, tickets, use_oracle=use_oracle)
        predictions = batch.predictions or [None] * len(entries)

        processed = [
            build_processed_entry(entry, prediction, thresholds)
            for entry, prediction in zip(entries, predictions)
        ]

        summary = summarize(processed)
        logger.info(
            f"Matching complete ({batch.source.value}): {summary.mapped} mapped, "
            f"{summary.needs_selection} need selection, {summary.unmapped} unmapped"
        )
        return processed

    def predict_best_ticket(
        self,
        task: str,
        tickets: Sequence[TicketRecord],
        project_identifier: Optional[str] = None,
    ) -> Optional[TaskPrediction]:
        """
        Predict the best ticket for a single task.

        The oracle answer is used when confident enough, otherwise the best
        keyword match.
        """
        if self._oracle is not None:
            try:
                logger.info(f"Using AI to match task: '{task}'")
                result = self._oracle.find_best_ticket_match(task, tickets, project_identifier)
                prediction = None
                if result is not None:
                    eligible = _index_tickets(filter_eligible(tickets, project_identifier))
                    prediction = resolve_oracle_result(
                        task, result, eligible, method=MatchMethod.GEMINI_AI
                    )
                if prediction is not None and prediction.score >= AI_MINIMUM_CONFIDENCE:
                    return prediction
                logger.info("AI found no confident match for task")
            except OracleError as e:
                logger.error(f"AI matching failed, falling back to keyword matching: {e}")

        logger.info(f"Using keyword fallback for task: '{task}'")
        match = best_keyword_match(task, tickets, project_identifier)
        if match is None:
            logger.info("No match found for task")
            return None

        return TaskPrediction(
            task=task,
            ticket=match.ticket,
            score=match.score,
            method=MatchMethod.KEYWORD_FALLBACK,
        )


def match_all(
    entries: Sequence[TodoEntry],
    tickets: Sequence[TicketRecord],
    thresholds: Optional[Thresholds] = None,
    use_oracle: bool = True,
    oracle: Optional[TicketMatchingOracle] = None,
) -> list[ProcessedEntry]:
    """Convenience wrapper around TicketMatcher.match_all."""
    return TicketMatcher(oracle).match_all(
        entries,
        tickets,
        thresholds=thresholds,
        use_oracle=use_oracle,
    )


def summarize(entries: Sequence[ProcessedEntry]) -> MatchingSummary:
    """Count entries by outcome."""
    return MatchingSummary(
        total=len(entries),
        mapped=sum(
            1 for e in entries
            if e.status == EntryStatus.AUTO_ASSIGNED or e.selected_ticket is not None
        ),
        unmapped=sum(1 for e in entries if e.status == EntryStatus.UNMAPPED),
        needs_selection=sum(1 for e in entries if e.status == EntryStatus.NEEDS_SELECTION),
    )


def select_ticket(entry: ProcessedEntry, ticket: TicketRecord) -> ProcessedEntry:
    """Record a manual ticket choice for an entry."""
    return entry.model_copy(
        update={"selected_ticket": ticket, "status": EntryStatus.AUTO_ASSIGNED}
    )


def skip_entry(entry: ProcessedEntry) -> ProcessedEntry:
    """Mark an entry as deliberately skipped."""
    return entry.model_copy(update={"selected_ticket": None, "status": EntryStatus.SKIPPED})
