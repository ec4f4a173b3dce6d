"""
Main entry point for the Timesheet Ticket Matcher.

Orchestrates the matching pipeline:
1. Parse the todo list
2. Fetch the ticket universe (Jira or an offline ticket file)
3. Match and classify every task (AI oracle with keyword fallback)
4. Render timesheet lines and optionally an Excel report

and the worklog pipeline, which submits a rendered timesheet to Jira.
"""

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from .config import get_config, AppConfig
from .data_sources import fetch_ticket_universe, load_ticket_file, DataSourceError, JiraClient
from .excel_generator import generate_report, ExcelGeneratorError
from .matcher import TicketMatcher, summarize
from .models import PipelineResult, Thresholds, WorkLogEntry, WorklogSubmissionReport
from .oracle import create_oracle, TicketMatchingOracle
from .parser import parse_todo_content
from .timesheet import log_work_entries, parse_timesheet_entries, render_timesheet


def setup_logging(level: str) -> None:
    """
    Configure application logging.

    Logs go to stderr; stdout carries the rendered timesheet.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Error during pipeline execution."""
    pass


def validate_config(config: AppConfig, require_jira: bool = True) -> None:
    """
    Validate configuration before running.

    Raises:
        PipelineError: If configuration is invalid.
    """
    errors = config.validate(require_jira=require_jira)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise PipelineError(
            f"Configuration validation failed with {len(errors)} error(s)"
        )


def thresholds_from_config(config: AppConfig) -> Thresholds:
    """Build classification thresholds from the matching configuration."""
    return Thresholds(
        minimum=config.matching.minimum_confidence,
        choice=config.matching.choice_confidence,
        high_confidence=config.matching.high_confidence,
    )


def _read_text(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise PipelineError(f"Cannot read {path}: {e}") from e


def run_pipeline(
    config: Optional[AppConfig] = None,
    todo_path: Optional[Path] = None,
    use_ai: Optional[bool] = None,
    tickets_file: Optional[Path] = None,
    report_path: Optional[Path] = None,
    thresholds: Optional[Thresholds] = None,
    oracle: Optional[TicketMatchingOracle] = None,
) -> PipelineResult:
    """
    Execute the matching pipeline for a todo file.

    Args:
        config: Optional configuration override.
        todo_path: Todo list to match.
        use_ai: Consult the oracle (defaults to the USE_AI setting).
        tickets_file: Offline ticket file used instead of Jira.
        report_path: Where to write an Excel report; no report when None.
        thresholds: Classification thresholds (defaults from configuration).
        oracle: Oracle override; built from configuration when None.

    Returns:
        PipelineResult with processed entries and rendered lines.

    Raises:
        PipelineError: If any step fails.
    """
    if config is None:
        config = get_config()
    if todo_path is None:
        raise PipelineError("A todo file is required")

    use_ai = config.matching.use_ai if use_ai is None else use_ai
    thresholds = thresholds or thresholds_from_config(config)

    validate_config(config, require_jira=tickets_file is None)

    logger.info("=" * 60)
    logger.info("Starting Timesheet Matching Pipeline")
    logger.info("=" * 60)

    # Step 1: Parse todo list
    logger.info("-" * 40)
    logger.info(f"Step 1: Parsing todo list {todo_path}")
    logger.info("-" * 40)

    entries = parse_todo_content(_read_text(todo_path))
    logger.info(f"Parsed {len(entries)} tasks")

    # Step 2: Fetch tickets
    logger.info("-" * 40)
    logger.info("Step 2: Fetching ticket universe")
    logger.info("-" * 40)

    try:
        if tickets_file is not None:
            tickets = load_ticket_file(tickets_file)
        else:
            tickets = fetch_ticket_universe(config.jira)
    except DataSourceError as e:
        raise PipelineError(f"Ticket fetch failed: {e}") from e

    # Step 3: Match tasks
    logger.info("-" * 40)
    logger.info("Step 3: Matching tasks to tickets")
    logger.info("-" * 40)

    if use_ai and oracle is None:
        oracle = create_oracle(config.oracle)

    matcher = TicketMatcher(
        oracle if use_ai else None,
        preliminary_limit=config.matching.preliminary_limit,
    )
    processed = matcher.match_all(entries, tickets, thresholds=thresholds, use_oracle=use_ai)
    summary = summarize(processed)

    # Step 4: Render output
    logger.info("-" * 40)
    logger.info("Step 4: Rendering timesheet")
    logger.info("-" * 40)

    lines = render_timesheet(processed)

    generated_report = None
    if report_path is not None:
        output = replace(
            config.output,
            output_dir=report_path.parent,
            report_filename=report_path.name,
        )
        try:
            generated_report = generate_report(processed, output)
        except ExcelGeneratorError as e:
            raise PipelineError(f"Report generation failed: {e}") from e

    logger.info("=" * 60)
    logger.info(
        f"Pipeline completed: {summary.total} tasks, {summary.mapped} mapped, "
        f"{summary.needs_selection} need selection, {summary.unmapped} unmapped"
    )
    logger.info("=" * 60)

    return PipelineResult(
        entries=processed,
        lines=lines,
        summary=summary,
        report_path=generated_report,
    )


def submit_timesheet(
    config: AppConfig,
    timesheet_path: Path,
    dry_run: bool = False,
) -> tuple[list[WorkLogEntry], Optional[WorklogSubmissionReport]]:
    """
    Parse a rendered timesheet and log its entries to Jira.

    Returns:
        The parsed entries and the submission report (None on a dry run).

    Raises:
        PipelineError: If the timesheet cannot be read or Jira is unreachable.
    """
    entries = parse_timesheet_entries(_read_text(timesheet_path))
    logger.info(f"Found {len(entries)} loggable timesheet entries")

    if dry_run or not entries:
        return entries, None

    validate_config(config)
    try:
        with JiraClient(config.jira) as client:
            report = log_work_entries(client, entries)
    except DataSourceError as e:
        raise PipelineError(f"Worklog submission failed: {e}") from e

    return entries, report


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """
    Timesheet Ticket Matcher.

    Matches todo list tasks to Jira tickets using keyword scoring and an
    optional Gemini oracle, and logs the resulting timesheet as worklogs.
    """
    config = get_config()
    if debug:
        config = replace(config, log_level="DEBUG")

    setup_logging(config.log_level)
    ctx.obj = {"config": config, "debug": debug}


@cli.command()
@click.argument("todo_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--tickets",
    "tickets_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Offline ticket file (YAML or JSON) used instead of Jira",
)
@click.option("--no-ai", is_flag=True, default=False, help="Use keyword matching only")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write an Excel report of the matches to this path",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the timesheet to this file instead of stdout",
)
@click.option("--min-confidence", type=click.FloatRange(0.0, 1.0), help="Minimum threshold")
@click.option("--choice-confidence", type=click.FloatRange(0.0, 1.0), help="Choice threshold")
@click.option("--high-confidence", type=click.FloatRange(0.0, 1.0), help="Auto-assign threshold")
@click.pass_context
def match(
    ctx: click.Context,
    todo_file: Path,
    tickets_file: Optional[Path],
    no_ai: bool,
    report: Optional[Path],
    output: Optional[Path],
    min_confidence: Optional[float],
    choice_confidence: Optional[float],
    high_confidence: Optional[float],
) -> None:
    """Match a todo file to Jira tickets and print the timesheet."""
    config: AppConfig = ctx.obj["config"]
    defaults = thresholds_from_config(config)
    thresholds = Thresholds(
        minimum=defaults.minimum if min_confidence is None else min_confidence,
        choice=defaults.choice if choice_confidence is None else choice_confidence,
        high_confidence=defaults.high_confidence if high_confidence is None else high_confidence,
    )

    def _run() -> None:
        result = run_pipeline(
            config,
            todo_path=todo_file,
            use_ai=False if no_ai else None,
            tickets_file=tickets_file,
            report_path=report,
            thresholds=thresholds,
        )
        text = "\n".join(result.lines)
        if output:
            output.write_text(text + "\n", encoding="utf-8")
            click.echo(f"Timesheet written to: {output}", err=True)
        else:
            click.echo(text)

    _run_command(_run, ctx.obj["debug"])


@cli.command()
@click.argument("timesheet_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Show what would be logged without calling Jira",
)
@click.pass_context
def log(ctx: click.Context, timesheet_file: Path, dry_run: bool) -> None:
    """Log a rendered timesheet to Jira as worklogs."""
    config: AppConfig = ctx.obj["config"]

    def _run() -> None:
        entries, report = submit_timesheet(config, timesheet_file, dry_run=dry_run)
        if report is None:
            for entry in entries:
                click.echo(
                    f"{entry.issue_key}: {entry.comment} "
                    f"({entry.duration_seconds}s from {entry.started})"
                )
            return

        click.echo(f"Logged {len(report.successful)} worklogs, {len(report.failed)} failed")
        for failure in report.failed:
            click.echo(f"  {failure.entry.issue_key}: {failure.error}", err=True)
        if report.failed:
            sys.exit(1)

    _run_command(_run, ctx.obj["debug"])


@cli.command()
@click.pass_context
def models(ctx: click.Context) -> None:
    """List the Gemini models available to the configured API key."""
    config: AppConfig = ctx.obj["config"]

    def _run() -> None:
        oracle = create_oracle(config.oracle)
        if oracle is None:
            raise PipelineError("GEMINI_API_KEY is required to list models")
        for model_id in oracle.list_models():
            click.echo(model_id)

    _run_command(_run, ctx.obj["debug"])


def _run_command(run, debug: bool) -> None:
    """Run a command body with the CLI's error reporting and exit codes."""
    try:
        run()
    except PipelineError as e:
        click.echo(f"Pipeline failed: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    cli()
