"""
LLM-based ticket matching oracle for the Timesheet Ticket Matcher.

Uses Gemini through its OpenAI-compatible API to pick the best Jira ticket
(plus up to two alternatives) for every task in a batch.

Implements graceful degradation when:
- A model is missing or rate limited (cascade to the next model)
- A call times out or fails transiently (retry with exponential backoff)
- The reply is not the requested JSON (surfaced as OracleResponseError)
"""

import json
import logging
import re
import time
from typing import Any, Callable, Optional, Protocol, Sequence

from openai import APITimeoutError, NotFoundError, OpenAI, RateLimitError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import OracleConfig
from .models import (
    OracleSuggestion,
    OracleTaskResult,
    PreliminaryTask,
    TicketRecord,
)
from .scoring import filter_eligible, filter_universe


logger = logging.getLogger(__name__)


class OracleError(Exception):
    """Base exception for matching oracle errors."""
    pass


class OracleNotConfiguredError(OracleError):
    """The oracle was requested without an API key."""
    pass


class ModelNotFoundError(OracleError):
    """The requested model does not exist or is unsupported."""
    pass


class QuotaExceededError(OracleError):
    """The model's quota is exhausted or the call was rate limited."""
    pass


class OracleTimeoutError(OracleError):
    """The oracle did not answer within the wall-clock limit."""
    pass


class OracleResponseError(OracleError):
    """The oracle reply did not contain the requested JSON structure."""
    pass


class OracleUnavailableError(OracleError):
    """Every model in the cascade failed."""
    pass


# Substrings identifying errors that skip straight to the next model
MODEL_NOT_FOUND_MARKERS = ("is not found for API version", "404 Not Found")
QUOTA_MARKERS = ("429", "quota")

MAX_ALTERNATIVES = 2
SUMMARY_PREVIEW_LENGTH = 100
DESCRIPTION_PREVIEW_LENGTH = 200

# Greedy on purpose: spans from the first "{" to the last "}"
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


class TextGenerator(Protocol):
    """A text-in/text-out model call."""

    def generate(self, prompt: str, model: str, timeout: float) -> str:
        ...


def should_advance_model(error: BaseException) -> bool:
    """
    Decide whether an error should skip the remaining retries of a model.

    Missing models and exhausted quotas will not recover by retrying the
    same model, so the cascade moves on immediately.
    """
    if isinstance(error, (ModelNotFoundError, QuotaExceededError)):
        return True
    message = str(error)
    return any(marker in message for marker in MODEL_NOT_FOUND_MARKERS + QUOTA_MARKERS)


class GeminiGenerator:
    """
    Gemini text generation through the OpenAI-compatible endpoint.

    Translates SDK errors into the oracle error taxonomy. The SDK's own
    retries are disabled; retry policy belongs to the cascade.
    """

    def __init__(self, config: OracleConfig):
        """
        Initialize the OpenAI client.

        Args:
            config: Oracle configuration with API key and endpoint.
        """
        self._config = config

        client_kwargs: dict[str, Any] = {
            "api_key": config.api_key,
            "max_retries": 0,
        }
        if config.api_base_url:
            client_kwargs["base_url"] = config.api_base_url

        self._client = OpenAI(**client_kwargs)

    def generate(self, prompt: str, model: str, timeout: float) -> str:
        """
        Run a single prompt against a model.

        Raises:
            ModelNotFoundError: Model is unknown to the API.
            QuotaExceededError: Rate limit or quota hit.
            OracleTimeoutError: No answer within ``timeout`` seconds.
        """
        try:
            response = self._client.chat.completions.create(
                model=model,
                temperature=self._config.temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except NotFoundError as e:
            raise ModelNotFoundError(f"Model {model} not found: {e}") from e
        except RateLimitError as e:
            raise QuotaExceededError(f"Rate limit hit with model {model}: {e}") from e
        except APITimeoutError as e:
            raise OracleTimeoutError(f"Timeout after {timeout}s with model {model}") from e

        if not response.choices:
            raise OracleResponseError(f"Empty response from model {model}")
        return response.choices[0].message.content or ""

    def list_models(self) -> list[str]:
        """List model identifiers available to the API key."""
        return [model.id for model in self._client.models.list()]


# =============================================================================
# Prompt construction
# =============================================================================

CONFIDENCE_GUIDE = """- 0.9-1.0: Perfect/near-perfect match
- 0.75-0.89: High confidence match
- 0.5-0.74: Medium confidence, might need user selection
- 0.3-0.49: Low confidence, but possible
- 0.0-0.29: Very low/no meaningful match"""


def _preview(text: str, length: int) -> str:
    return text[:length]


def build_batch_prompt(
    tasks: Sequence[PreliminaryTask],
    tickets: Sequence[TicketRecord],
) -> str:
    """
    Build one prompt covering every task against the shared ticket universe.

    Args:
        tasks: Tasks with their keyword-ranked hints.
        tickets: Eligible tickets.

    Returns:
        Formatted prompt string.
    """
    task_lines = []
    for index, item in enumerate(tasks, 1):
        project_context = f"[{item.project_identifier}] " if item.project_identifier else ""
        hints = ", ".join(match.ticket.key for match in item.preliminary_matches[:2])
        task_lines.append(f'{index}. "{project_context}{item.task}" (prelim: {hints or "none"})')

    ticket_lines = [
        f"{ticket.key}: {_preview(ticket.summary, SUMMARY_PREVIEW_LENGTH)}... ({ticket.issue_type})"
        for ticket in tickets
    ]

    count = len(tasks)
    return f"""You are an expert at matching work tasks to JIRA tickets in bulk. I have {count} tasks that need to be matched against {len(tickets)} JIRA tickets.

TASKS TO PROCESS:
{chr(10).join(task_lines)}

AVAILABLE JIRA TICKETS:
{chr(10).join(ticket_lines)}

INSTRUCTIONS:
- Process ALL {count} tasks in one response
- Match each task to the best available ticket
- Consider project context in brackets (e.g., [mydebit] tasks should match tickets with similar project labels)
- Focus on semantic similarity and keywords
- Avoid duplicate ticket assignments when possible

Return your response in this exact JSON format:
{{
  "matches": [
    {{
      "taskIndex": 1,
      "bestMatch": {{
        "ticketKey": "TICKET-123",
        "confidence": 0.85,
        "reasoning": "Brief explanation"
      }},
      "alternatives": [
        {{
          "ticketKey": "TICKET-456",
          "confidence": 0.60,
          "reasoning": "Alternative reason"
        }}
      ]
    }}
  ]
}}

CRITICAL:
- Include ALL {count} tasks in your matches array
- Use taskIndex 1-{count} (1-based indexing)
- Confidence scores:
{CONFIDENCE_GUIDE}
- If no good match exists (confidence < 0.3), set bestMatch to null
- Maximum {MAX_ALTERNATIVES} alternatives per task to keep response manageable
- Be concise in reasoning to avoid token limits"""


def build_single_prompt(
    task: str,
    tickets: Sequence[TicketRecord],
    project_identifier: Optional[str] = None,
) -> str:
    """
    Build the prompt for matching a single task.

    Args:
        task: Task description.
        tickets: Eligible tickets.
        project_identifier: Optional project context.

    Returns:
        Formatted prompt string.
    """
    project_context = (
        f'The task is from project/context: "{project_identifier}". '
        "Please consider this when matching."
        if project_identifier else ""
    )

    ticket_blocks = "\n\n".join(
        f"{index}. {ticket.key}: {ticket.summary}\n"
        f"   Type: {ticket.issue_type} | Status: {ticket.status}\n"
        f"   Description: {_preview(ticket.description, DESCRIPTION_PREVIEW_LENGTH)}..."
        for index, ticket in enumerate(tickets, 1)
    )

    return f"""You are an expert at matching work tasks to JIRA tickets. I need you to find the best matching JIRA ticket(s) for a given task.

Task to match: "{task}"
{project_context}

Available JIRA tickets:
{ticket_blocks}

Please analyze the task and find the best matching ticket(s). Consider:
1. Semantic similarity between task description and ticket summary/description
2. Project context if provided
3. Task type and ticket type compatibility
4. Keywords and technical terms

Return your response in this exact JSON format:
{{
  "bestMatch": {{
    "ticketKey": "TICKET-123",
    "confidence": 0.85,
    "reasoning": "Explanation of why this is the best match"
  }},
  "alternatives": [
    {{
      "ticketKey": "TICKET-456",
      "confidence": 0.60,
      "reasoning": "Why this could be an alternative"
    }}
  ]
}}

Confidence scores should be between 0.0 and 1.0:
{CONFIDENCE_GUIDE}

If no good match exists (confidence < 0.3), set bestMatch to null.
Provide at most {MAX_ALTERNATIVES} alternatives, ordered by confidence."""


# =============================================================================
# Response parsing
# =============================================================================

def _extract_json_object(raw: str) -> dict:
    """Pull the JSON object out of free text around it."""
    match = JSON_OBJECT_PATTERN.search(raw or "")
    if not match:
        raise OracleResponseError("No JSON found in response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise OracleResponseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise OracleResponseError("Invalid response structure")
    return data


def _parse_suggestion(data: Any) -> Optional[OracleSuggestion]:
    if not isinstance(data, dict):
        return None

    ticket_key = data.get("ticketKey")
    if not isinstance(ticket_key, str) or not ticket_key.strip():
        return None

    return OracleSuggestion(
        ticket_key=ticket_key.strip(),
        confidence=data.get("confidence"),
        reasoning=str(data.get("reasoning") or "No reasoning provided"),
    )


def _parse_alternatives(data: Any) -> list[OracleSuggestion]:
    if not isinstance(data, list):
        return []
    suggestions = [_parse_suggestion(item) for item in data]
    return [s for s in suggestions if s is not None][:MAX_ALTERNATIVES]


def _task_index(value: Any) -> Optional[int]:
    """Convert a 1-based taskIndex to a 0-based index (missing means 1)."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    # Fractional, infinite and NaN indices point at no task
    if isinstance(value, float) and not value.is_integer():
        return None
    try:
        return int(value) - 1
    except (TypeError, ValueError, OverflowError):
        return None


def parse_batch_response(raw: str, expected_count: int) -> list[OracleTaskResult]:
    """
    Parse and repair a batched oracle reply.

    Tasks the reply never mentions come back with no best match; indices
    outside ``1..expected_count`` are ignored.

    Args:
        raw: Raw reply text.
        expected_count: Number of tasks in the prompt.

    Returns:
        One OracleTaskResult per task, in prompt order.

    Raises:
        OracleResponseError: No JSON object or no ``matches`` array.
    """
    try:
        data = _extract_json_object(raw)
        matches = data.get("matches")
        if not isinstance(matches, list):
            raise OracleResponseError("Invalid response structure - missing matches array")
    except OracleResponseError as e:
        logger.error(f"Failed to parse batch oracle response: {e}")
        logger.error(f"Raw response: {raw}")
        raise

    results = [OracleTaskResult() for _ in range(expected_count)]

    for match in matches:
        if not isinstance(match, dict):
            continue
        index = _task_index(match.get("taskIndex"))
        if index is None or not 0 <= index < expected_count:
            logger.debug(f"Ignoring out of range taskIndex: {match.get('taskIndex')!r}")
            continue

        results[index] = OracleTaskResult(
            best_match=_parse_suggestion(match.get("bestMatch")),
            alternatives=_parse_alternatives(match.get("alternatives")),
        )

    return results


def parse_single_response(raw: str) -> OracleTaskResult:
    """
    Parse and repair a single-task oracle reply.

    Raises:
        OracleResponseError: No JSON object in the reply.
    """
    try:
        data = _extract_json_object(raw)
    except OracleResponseError as e:
        logger.error(f"Failed to parse oracle response: {e}")
        logger.error(f"Raw response: {raw}")
        raise

    return OracleTaskResult(
        best_match=_parse_suggestion(data.get("bestMatch")),
        alternatives=_parse_alternatives(data.get("alternatives")),
    )


# =============================================================================
# Oracle client
# =============================================================================

class TicketMatchingOracle:
    """
    Remote matching oracle with model cascade and retry/backoff.

    Each model in the cascade gets up to ``max_retries`` attempts with
    exponential backoff. Missing-model and quota errors move on to the next
    model at once. When every model fails, OracleUnavailableError is raised.
    """

    def __init__(
        self,
        config: OracleConfig,
        generator: Optional[TextGenerator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the oracle.

        Args:
            config: Oracle configuration.
            generator: Text generator; defaults to GeminiGenerator.
            sleep: Sleep function used between retries.

        Raises:
            OracleNotConfiguredError: No generator and no API key.
        """
        if generator is None:
            if not config.enabled:
                raise OracleNotConfiguredError("GEMINI_API_KEY is required for AI matching")
            generator = GeminiGenerator(config)

        self._config = config
        self._generator = generator
        self._sleep = sleep

        logger.info(f"Initialized matching oracle with model: {config.model}")

    @property
    def models_to_try(self) -> list[str]:
        """Primary model followed by the fallbacks, without duplicates."""
        ordered = [self._config.model, *self._config.fallback_models]
        return list(dict.fromkeys(model for model in ordered if model))

    def _retrying(self, model: str) -> Retrying:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Oracle attempt {retry_state.attempt_number} with model {model} failed: "
                f"{retry_state.outcome.exception()}; retrying in "
                f"{retry_state.next_action.sleep:.1f}s"
            )

        return Retrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(
                multiplier=self._config.backoff_base,
                max=self._config.backoff_max,
            ),
            retry=retry_if_exception(lambda e: not should_advance_model(e)),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def call_with_fallback(self, prompt: str, timeout: float) -> str:
        """
        Send a prompt through the model cascade.

        Args:
            prompt: Prompt text.
            timeout: Wall-clock limit per attempt, in seconds.

        Returns:
            Raw reply text from the first model that answers.

        Raises:
            OracleUnavailableError: Every model failed.
        """
        models = self.models_to_try
        last_error: Optional[BaseException] = None

        for index, model in enumerate(models):
            if index > 0:
                logger.info(f"Trying fallback model: {model}")
            try:
                return self._retrying(model)(self._generator.generate, prompt, model, timeout)
            except Exception as e:
                last_error = e
                if should_advance_model(e):
                    logger.warning(f"Model {model} unavailable ({e}), trying next model")
                else:
                    logger.warning(f"Model {model} failed after retries: {e}")

        logger.error(f"All {len(models)} oracle models exhausted")
        raise OracleUnavailableError(
            f"Failed to call oracle with any of {len(models)} models: {last_error}"
        ) from last_error

    def batch_find_ticket_matches(
        self,
        tasks: Sequence[PreliminaryTask],
        tickets: Sequence[TicketRecord],
    ) -> list[OracleTaskResult]:
        """
        Match a whole batch of tasks in a single request.

        Args:
            tasks: Tasks with preliminary keyword matches as hints.
            tickets: Full ticket universe; filtered here.

        Returns:
            One OracleTaskResult per task, tickets referenced by key.

        Raises:
            OracleError: The cascade failed or the reply was unusable.
        """
        if not tasks:
            return []

        relevant = filter_universe(tickets, (task.project_identifier for task in tasks))
        logger.info(
            f"Filtered tickets: {len(tickets)} -> {len(relevant)} "
            f"(excluded stories/done/deployed/cancelled/closed)"
        )
        if not relevant:
            logger.info("No eligible tickets for batch; skipping oracle call")
            return [OracleTaskResult() for _ in tasks]

        prompt = build_batch_prompt(tasks, relevant)
        logger.info(
            f"Batch prompt: {len(tasks)} tasks vs {len(relevant)} tickets "
            f"(~{round(len(prompt) / 1000)}K characters)"
        )

        raw = self.call_with_fallback(prompt, self._config.batch_timeout)
        return parse_batch_response(raw, len(tasks))

    def find_best_ticket_match(
        self,
        task: str,
        tickets: Sequence[TicketRecord],
        project_identifier: Optional[str] = None,
    ) -> Optional[OracleTaskResult]:
        """
        Match a single task.

        Returns:
            OracleTaskResult, or None when no ticket is eligible.

        Raises:
            OracleError: The cascade failed or the reply was unusable.
        """
        relevant = filter_eligible(tickets, project_identifier)
        if not relevant:
            return None

        prompt = build_single_prompt(task, relevant, project_identifier)
        raw = self.call_with_fallback(prompt, self._config.timeout)
        return parse_single_response(raw)

    def list_models(self) -> list[str]:
        """List models available to the generator, when it supports it."""
        lister = getattr(self._generator, "list_models", None)
        if lister is None:
            return []
        return lister()


def create_oracle(config: OracleConfig) -> Optional[TicketMatchingOracle]:
    """
    Build the oracle if it is configured.

    Returns:
        TicketMatchingOracle, or None when no API key is set.
    """
    if not config.enabled:
        logger.warning("GEMINI_API_KEY missing; AI matching disabled")
        return None
    return TicketMatchingOracle(config)
