"""
Data models for the Timesheet Ticket Matcher.

Uses Pydantic for robust data validation and serialization.
All records that flow through a matching run are immutable so the ticket
universe can be shared read-only between entries.
"""

import math
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def clamp_score(value: Any) -> float:
    """
    Coerce an untrusted score to a float in [0, 1].

    Non-numeric and NaN values become 0.0.
    """
    try:
        score = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return max(0.0, min(1.0, score))


class MatchMethod(str, Enum):
    """How a candidate ticket was found."""

    KEYWORD_FALLBACK = "keyword-fallback"
    KEYWORD_BATCH = "keyword-batch"
    GEMINI_AI = "gemini-ai"
    GEMINI_AI_MEGA = "gemini-ai-mega"
    ALTERNATIVE = "alternative"


class EntryStatus(str, Enum):
    """Lifecycle status of a processed todo entry."""

    AUTO_ASSIGNED = "auto-assigned"
    NEEDS_SELECTION = "needs-selection"
    SKIPPED = "skipped"
    UNMAPPED = "unmapped"


class PredictionSource(str, Enum):
    """Which branch produced a batch prediction."""

    ORACLE = "oracle"
    FALLBACK = "fallback"


class TimeInfo(BaseModel):
    """Time tracking annotations of a completed todo line."""

    started: Optional[str] = Field(default=None, description="@started(...) value")
    done: Optional[str] = Field(default=None, description="@done(...) value")
    lasted: Optional[str] = Field(default=None, description="@lasted(...) value")

    model_config = {"frozen": True}

    def is_empty(self) -> bool:
        """Check if no annotation is present."""
        return not (self.started or self.done or self.lasted)


class TodoEntry(BaseModel):
    """
    One parsed todo line.

    Attributes:
        original_line: The trimmed source line
        task: Task description with any project tag removed
        project_identifier: Content of a leading [tag], if any
        is_completed: Whether the line was checked off
        time_info: Time annotations (completed lines only)
    """

    original_line: str = Field(..., description="Trimmed source line")
    task: str = Field(..., min_length=1, description="Task description")
    project_identifier: Optional[str] = Field(
        default=None,
        description="Project tag extracted from a leading [tag]"
    )
    is_completed: bool = Field(default=False, description="Checkmark prefixed")
    time_info: Optional[TimeInfo] = Field(default=None, description="Time annotations")

    model_config = {"frozen": True}


class TicketRecord(BaseModel):
    """A Jira ticket that tasks can be matched against."""

    key: str = Field(..., min_length=1, description="Issue key, e.g. PROJ-123")
    summary: str = Field(default="No summary", description="Issue summary")
    description: str = Field(default="", description="Plain text description")
    status: str = Field(default="Unknown", description="Status name")
    issue_type: str = Field(default="Unknown", description="Issue type name")
    assignee: str = Field(default="Unassigned", description="Assignee display name")
    reporter: str = Field(default="Unknown", description="Reporter display name")
    parent_epic: Optional[str] = Field(default=None, description="Parent epic key")

    model_config = {"frozen": True}

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v: Any) -> str:
        """Rich-text (ADF) or missing descriptions are not searchable."""
        return v if isinstance(v, str) else ""

    @property
    def search_text(self) -> str:
        """Lowercased text used for keyword matching."""
        return f"{self.summary} {self.description}".lower()

    @classmethod
    def from_jira_issue(
        cls,
        issue: dict,
        parent_epic: Optional[str] = None,
    ) -> "TicketRecord":
        """
        Build a ticket from a raw Jira issue payload.

        Args:
            issue: Issue JSON as returned by the Jira REST API.
            parent_epic: Epic key to record when fetched through an epic.

        Returns:
            Parsed TicketRecord.
        """
        fields = issue.get("fields") or {}

        def _display(user: Optional[dict], default: str) -> str:
            if isinstance(user, dict) and user.get("displayName"):
                return user["displayName"]
            return default

        def _name(value: Optional[dict]) -> str:
            if isinstance(value, dict) and value.get("name"):
                return value["name"]
            return "Unknown"

        return cls(
            key=issue["key"],
            summary=fields.get("summary") or "No summary",
            description=fields.get("description"),
            status=_name(fields.get("status")),
            issue_type=_name(fields.get("issuetype")),
            assignee=_display(fields.get("assignee"), "Unassigned"),
            reporter=_display(fields.get("reporter"), "Unknown"),
            parent_epic=parent_epic,
        )


class JiraUser(BaseModel):
    """The authenticated Jira user."""

    account_id: str
    display_name: str


class SearchPage(BaseModel):
    """One page of a Jira issue search."""

    issues: list[TicketRecord] = Field(default_factory=list)
    is_last: bool = True
    next_page_token: Optional[str] = None


class ScoredTicket(BaseModel):
    """A ticket paired with a confidence score, before classification."""

    ticket: TicketRecord
    score: float = Field(default=0.0, ge=0.0, le=1.0)

    model_config = {"frozen": True}

    @field_validator("score", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        return clamp_score(v)


class MatchCandidate(BaseModel):
    """A candidate ticket attached to a processed entry."""

    ticket: TicketRecord
    score: float = Field(default=0.0, ge=0.0, le=1.0, description="Confidence (0-1)")
    method: MatchMethod

    model_config = {"frozen": True}

    @field_validator("score", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        """Scores from the oracle are untrusted; always clamp."""
        return clamp_score(v)


class Thresholds(BaseModel):
    """
    Confidence thresholds for classification.

    Ordering (minimum <= choice <= high_confidence) is the caller's
    responsibility and is not enforced here.
    """

    minimum: float = Field(default=0.3, ge=0.0, le=1.0)
    choice: float = Field(default=0.5, ge=0.0, le=1.0)
    high_confidence: float = Field(default=0.75, ge=0.0, le=1.0)

    model_config = {"frozen": True}


class ProcessedEntry(BaseModel):
    """The classified result for one todo entry."""

    id: str = Field(..., description="Unique entry id")
    original_task: str = Field(..., description="Task text")
    project_identifier: Optional[str] = None
    time_info: Optional[TimeInfo] = None
    matches: list[MatchCandidate] = Field(
        default_factory=list,
        max_length=3,
        description="Best match first, then alternatives"
    )
    selected_ticket: Optional[TicketRecord] = None
    status: EntryStatus = EntryStatus.UNMAPPED
    confidence: Optional[float] = None

    model_config = {"frozen": True}


class PreliminaryTask(BaseModel):
    """A task together with its keyword-ranked candidate tickets."""

    task: str
    project_identifier: Optional[str] = None
    preliminary_matches: list[ScoredTicket] = Field(default_factory=list)

    model_config = {"frozen": True}


class OracleSuggestion(BaseModel):
    """A ticket suggested by the oracle, referenced by key only."""

    ticket_key: str = Field(..., min_length=1)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="No reasoning provided")

    model_config = {"frozen": True}

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        return clamp_score(v)


class OracleTaskResult(BaseModel):
    """Oracle output for one task: best match plus up to two alternatives."""

    best_match: Optional[OracleSuggestion] = None
    alternatives: list[OracleSuggestion] = Field(default_factory=list, max_length=2)

    model_config = {"frozen": True}


class TaskPrediction(BaseModel):
    """A resolved best match (and alternatives) for one task."""

    task: str
    ticket: TicketRecord
    score: float = Field(ge=0.0, le=1.0)
    method: MatchMethod
    alternatives: list[ScoredTicket] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("score", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        return clamp_score(v)


class BatchPrediction(BaseModel):
    """Per-task predictions tagged with the branch that produced them."""

    source: PredictionSource
    predictions: list[Optional[TaskPrediction]] = Field(default_factory=list)

    model_config = {"frozen": True}


class MatchingSummary(BaseModel):
    """Counts of processed entries by outcome."""

    total: int = 0
    mapped: int = 0
    unmapped: int = 0
    needs_selection: int = 0


class WorkLogEntry(BaseModel):
    """A parsed timesheet line ready to be logged against a ticket."""

    issue_key: str
    comment: str
    started: str = Field(..., description="Jira formatted start timestamp")
    duration_seconds: int = Field(default=0, ge=0)
    original_line: str

    model_config = {"frozen": True}


class FailedWorkLog(BaseModel):
    """A worklog that could not be submitted."""

    entry: WorkLogEntry
    error: str


class WorklogSubmissionReport(BaseModel):
    """Outcome of submitting a batch of worklogs."""

    successful: list[WorkLogEntry] = Field(default_factory=list)
    failed: list[FailedWorkLog] = Field(default_factory=list)


class PipelineResult(BaseModel):
    """Everything a matching run produced."""

    entries: list[ProcessedEntry] = Field(default_factory=list)
    lines: list[str] = Field(default_factory=list, description="Rendered timesheet lines")
    summary: MatchingSummary = Field(default_factory=MatchingSummary)
    report_path: Optional[Path] = None
