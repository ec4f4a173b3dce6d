"""
Configuration module for the Timesheet Ticket Matcher.

Handles all configuration through environment variables with secure defaults.
Never stores sensitive data directly in code.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()


# Gemini models tried, in order, after the configured primary model
FALLBACK_MODELS: tuple[str, ...] = (
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
    "gemini-flash-latest",
    "gemini-pro-latest",
    "gemini-2.0-flash-lite",
)


def _split_list(value: str) -> tuple[str, ...]:
    """Split a comma separated environment value into a tuple of items."""
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class JiraConfig:
    """Configuration for the Jira REST API."""

    base_url: str = field(
        default_factory=lambda: os.getenv("JIRA_URL", "")
    )
    email: str = field(
        default_factory=lambda: os.getenv("JIRA_EMAIL", "")
    )
    api_token: str = field(
        default_factory=lambda: os.getenv("JIRA_API_TOKEN", "")
    )

    # Request timeout in seconds
    request_timeout: int = field(
        default_factory=lambda: int(os.getenv("JIRA_REQUEST_TIMEOUT", "30"))
    )
    max_results: int = field(
        default_factory=lambda: int(os.getenv("JIRA_MAX_RESULTS", "1000"))
    )

    # Epics whose unassigned children are shared by the whole team
    epic_keys: tuple[str, ...] = field(
        default_factory=lambda: _split_list(os.getenv("JIRA_EPIC_KEYS", ""))
    )


@dataclass(frozen=True)
class OracleConfig:
    """Configuration for the Gemini matching oracle (OpenAI compatible API)."""

    api_key: str = field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY", "")
    )
    api_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv(
            "GEMINI_API_BASE",
            "https://generativelanguage.googleapis.com/v1beta/openai/",
        )
    )
    model: str = field(
        default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    )
    fallback_models: tuple[str, ...] = FALLBACK_MODELS
    temperature: float = field(
        default_factory=lambda: float(os.getenv("ORACLE_TEMPERATURE", "0.1"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("ORACLE_MAX_RETRIES", "3"))
    )

    # Wall-clock limits in seconds; batched prompts get the longer one
    timeout: float = field(
        default_factory=lambda: float(os.getenv("ORACLE_TIMEOUT", "30"))
    )
    batch_timeout: float = field(
        default_factory=lambda: float(os.getenv("ORACLE_BATCH_TIMEOUT", "120"))
    )

    # Exponential backoff between attempts on the same model
    backoff_base: float = field(
        default_factory=lambda: float(os.getenv("ORACLE_BACKOFF_BASE", "1"))
    )
    backoff_max: float = field(
        default_factory=lambda: float(os.getenv("ORACLE_BACKOFF_MAX", "15"))
    )

    @property
    def enabled(self) -> bool:
        """The oracle is only usable with an API key."""
        return bool(self.api_key)


@dataclass(frozen=True)
class MatchingConfig:
    """Confidence thresholds and ranking limits for ticket matching."""

    minimum_confidence: float = field(
        default_factory=lambda: float(os.getenv("CONFIDENCE_MINIMUM", "0.3"))
    )
    choice_confidence: float = field(
        default_factory=lambda: float(os.getenv("CONFIDENCE_CHOICE", "0.5"))
    )
    high_confidence: float = field(
        default_factory=lambda: float(os.getenv("CONFIDENCE_HIGH", "0.75"))
    )
    preliminary_limit: int = field(
        default_factory=lambda: int(os.getenv("PRELIMINARY_LIMIT", "5"))
    )
    use_ai: bool = field(
        default_factory=lambda: os.getenv("USE_AI", "true").lower() == "true"
    )


@dataclass(frozen=True)
class OutputConfig:
    """Configuration for output files."""

    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", "./output"))
    )
    report_filename: str = field(
        default_factory=lambda: os.getenv(
            "REPORT_FILENAME",
            "timesheet_matches.xlsx"
        )
    )

    @property
    def report_path(self) -> Path:
        """Get full path to the report file."""
        return self.output_dir / self.report_filename


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration aggregating all config sections."""

    jira: JiraConfig = field(default_factory=JiraConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Logging level
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )

    def validate(self, require_jira: bool = True) -> list[str]:
        """
        Validate configuration and return list of errors.

        Args:
            require_jira: Whether Jira credentials are needed for this run.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if require_jira:
            if not self.jira.base_url:
                errors.append("JIRA_URL is required")
            if not self.jira.email:
                errors.append("JIRA_EMAIL is required")
            if not self.jira.api_token:
                errors.append("JIRA_API_TOKEN is required")

        thresholds = (
            self.matching.minimum_confidence,
            self.matching.choice_confidence,
            self.matching.high_confidence,
        )
        if any(value < 0.0 or value > 1.0 for value in thresholds):
            errors.append("Confidence thresholds must be between 0 and 1")

        if self.oracle.max_retries < 1:
            errors.append("ORACLE_MAX_RETRIES must be at least 1")

        return errors


def get_config() -> AppConfig:
    """
    Get application configuration.

    Returns:
        AppConfig instance with all settings loaded from environment.
    """
    return AppConfig()
