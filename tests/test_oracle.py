"""
Unit tests for the remote matching oracle.

Tests cover:
- Prompt construction
- Response parsing and repair
- Model cascade with retry and backoff
- Batch and single-task matching
"""

import json

import pytest
from unittest.mock import MagicMock, Mock, patch

from timesheet_matcher.config import OracleConfig
from timesheet_matcher.models import PreliminaryTask, ScoredTicket, TicketRecord
from timesheet_matcher.oracle import (
    GeminiGenerator,
    ModelNotFoundError,
    OracleNotConfiguredError,
    OracleResponseError,
    OracleTimeoutError,
    OracleUnavailableError,
    QuotaExceededError,
    TicketMatchingOracle,
    build_batch_prompt,
    build_single_prompt,
    create_oracle,
    parse_batch_response,
    parse_single_response,
    should_advance_model,
)


# =============================================================================
# Fixtures
# =============================================================================

class FakeGenerator:
    """Scripted text generator recording every call."""

    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    def generate(self, prompt: str, model: str, timeout: float) -> str:
        self.calls.append((model, timeout))
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def config() -> OracleConfig:
    """Oracle config with a short cascade."""
    return OracleConfig(
        api_key="test-key",
        model="primary",
        fallback_models=("primary", "backup-1", "backup-2"),
        max_retries=3,
        timeout=30,
        batch_timeout=120,
        backoff_base=1,
        backoff_max=15,
    )


@pytest.fixture
def tickets() -> list[TicketRecord]:
    return [
        TicketRecord(key="EW-1", summary="[MyDebit] Fix login", status="Open", issue_type="Bug"),
        TicketRecord(key="EW-2", summary="Deploy pipeline", status="Open", issue_type="Task"),
        TicketRecord(key="EW-3", summary="Old story", status="Open", issue_type="Story"),
    ]


@pytest.fixture
def tasks(tickets) -> list[PreliminaryTask]:
    return [
        PreliminaryTask(
            task="Fix login timeout",
            project_identifier="mydebit",
            preliminary_matches=[ScoredTicket(ticket=tickets[0], score=0.66)],
        ),
        PreliminaryTask(task="Deploy service"),
    ]


def batch_reply(*matches) -> str:
    return "Here you go:\n" + json.dumps({"matches": list(matches)}) + "\nThanks"


# =============================================================================
# Prompts
# =============================================================================

class TestBuildPrompts:
    """Tests for prompt construction."""

    def test_batch_prompt_contents(self, tasks, tickets):
        """Test tasks, hints and tickets are embedded."""
        prompt = build_batch_prompt(tasks, tickets[:2])

        assert '1. "[mydebit] Fix login timeout" (prelim: EW-1)' in prompt
        assert '2. "Deploy service" (prelim: none)' in prompt
        assert "EW-2: Deploy pipeline... (Task)" in prompt
        assert "Include ALL 2 tasks" in prompt

    def test_batch_prompt_truncates_summaries(self, tasks):
        """Test long summaries are shortened."""
        ticket = TicketRecord(key="EW-9", summary="x" * 300, issue_type="Bug")
        prompt = build_batch_prompt(tasks, [ticket])
        assert f"EW-9: {'x' * 100}... (Bug)" in prompt

    def test_single_prompt_project_context(self, tickets):
        """Test the single prompt mentions the project."""
        prompt = build_single_prompt("Fix login", tickets[:1], "mydebit")

        assert 'Task to match: "Fix login"' in prompt
        assert 'project/context: "mydebit"' in prompt
        assert "1. EW-1: [MyDebit] Fix login" in prompt


# =============================================================================
# Response parsing
# =============================================================================

class TestParseBatchResponse:
    """Tests for batch response parsing and repair."""

    def test_well_formed_reply(self):
        """Test a compliant reply is parsed per task."""
        raw = batch_reply(
            {
                "taskIndex": 1,
                "bestMatch": {"ticketKey": "EW-1", "confidence": 0.9, "reasoning": "same"},
                "alternatives": [{"ticketKey": "EW-2", "confidence": 0.4}],
            },
            {"taskIndex": 2, "bestMatch": None, "alternatives": []},
        )
        results = parse_batch_response(raw, 2)

        assert results[0].best_match.ticket_key == "EW-1"
        assert results[0].best_match.confidence == 0.9
        assert results[0].alternatives[0].ticket_key == "EW-2"
        assert results[0].alternatives[0].reasoning == "No reasoning provided"
        assert results[1].best_match is None

    @pytest.mark.parametrize("confidence,expected", [
        (1.7, 1.0),
        (-0.5, 0.0),
        ("0.8", 0.8),
        ("very high", 0.0),
        (None, 0.0),
    ])
    def test_confidence_is_clamped(self, confidence, expected):
        """Test untrusted confidences always land in [0, 1]."""
        raw = batch_reply({"taskIndex": 1, "bestMatch": {"ticketKey": "EW-1", "confidence": confidence}})
        results = parse_batch_response(raw, 1)
        assert results[0].best_match.confidence == pytest.approx(expected)

    def test_gaps_become_no_match(self):
        """Test tasks the reply never mentions have no best match."""
        raw = batch_reply({"taskIndex": 2, "bestMatch": {"ticketKey": "EW-2", "confidence": 0.8}})
        results = parse_batch_response(raw, 3)

        assert len(results) == 3
        assert results[0].best_match is None
        assert results[1].best_match.ticket_key == "EW-2"
        assert results[2].best_match is None

    def test_out_of_range_indices_ignored(self):
        """Test indices outside the batch are dropped."""
        raw = batch_reply(
            {"taskIndex": 0, "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8}},
            {"taskIndex": 5, "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8}},
            {"taskIndex": "abc", "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8}},
        )
        results = parse_batch_response(raw, 2)
        assert all(result.best_match is None for result in results)

    @pytest.mark.parametrize("index", ["Infinity", "-Infinity", "NaN", "1.9", "1e400"])
    def test_non_integral_indices_ignored(self, index):
        """Test fractional, infinite and NaN indices match no task."""
        raw = '{"matches": [{"taskIndex": %s, "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8}}]}' % index
        results = parse_batch_response(raw, 2)
        assert all(result.best_match is None for result in results)

    def test_integral_float_index_accepted(self):
        raw = batch_reply({"taskIndex": 2.0, "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8}})
        results = parse_batch_response(raw, 2)
        assert results[1].best_match.ticket_key == "EW-1"

    def test_oversized_confidence_becomes_zero(self):
        """Test an integer confidence too large for a float is treated as unusable."""
        raw = '{"matches": [{"taskIndex": 1, "bestMatch": {"ticketKey": "EW-1", "confidence": 1%s}}]}' % ("0" * 400)
        results = parse_batch_response(raw, 1)
        assert results[0].best_match.confidence == 0.0

    def test_alternatives_filtered_and_truncated(self):
        """Test empty keys are removed and at most two alternatives kept."""
        raw = batch_reply({
            "taskIndex": 1,
            "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8},
            "alternatives": [
                {"ticketKey": "", "confidence": 0.5},
                {"confidence": 0.5},
                {"ticketKey": "EW-2", "confidence": 0.5},
                {"ticketKey": "EW-3", "confidence": 0.4},
                {"ticketKey": "EW-4", "confidence": 0.3},
            ],
        })
        results = parse_batch_response(raw, 1)
        assert [alt.ticket_key for alt in results[0].alternatives] == ["EW-2", "EW-3"]

    @pytest.mark.parametrize("raw", [
        "I cannot help with that.",
        '{"matches": [',
        '{"result": []}',
        '{"matches": "none"}',
        "",
    ])
    def test_contract_violations_raise(self, raw):
        """Test missing JSON or matches array is a total failure."""
        with pytest.raises(OracleResponseError):
            parse_batch_response(raw, 1)


class TestParseSingleResponse:
    """Tests for single-task response parsing."""

    def test_parses_best_and_alternatives(self):
        """Test a compliant single reply."""
        raw = json.dumps({
            "bestMatch": {"ticketKey": "EW-1", "confidence": 0.8, "reasoning": "r"},
            "alternatives": [{"ticketKey": "EW-2", "confidence": 2}],
        })
        result = parse_single_response(raw)

        assert result.best_match.ticket_key == "EW-1"
        assert result.alternatives[0].confidence == 1.0

    def test_null_best_match(self):
        """Test a null best match is allowed."""
        result = parse_single_response('{"bestMatch": null}')
        assert result.best_match is None
        assert result.alternatives == []

    def test_no_json_raises(self):
        """Test free text without JSON is rejected."""
        with pytest.raises(OracleResponseError, match="No JSON"):
            parse_single_response("no idea")


# =============================================================================
# Cascade and retry
# =============================================================================

class TestShouldAdvanceModel:
    """Tests for the advance-immediately predicate."""

    @pytest.mark.parametrize("error", [
        ModelNotFoundError("gone"),
        QuotaExceededError("slow down"),
        RuntimeError("models/x is not found for API version v1beta"),
        RuntimeError("HTTP 429 Too Many Requests"),
        RuntimeError("You exceeded your current quota"),
    ])
    def test_advance_errors(self, error):
        assert should_advance_model(error)

    @pytest.mark.parametrize("error", [
        OracleTimeoutError("timeout"),
        ConnectionError("reset by peer"),
    ])
    def test_retryable_errors(self, error):
        assert not should_advance_model(error)


class TestCallWithFallback:
    """Tests for the model cascade."""

    def test_first_model_succeeds(self, config):
        """Test no retries when the primary answers."""
        generator = FakeGenerator(["ok"])
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        assert oracle.call_with_fallback("prompt", 30) == "ok"
        assert generator.calls == [("primary", 30)]

    def test_models_are_deduplicated(self, config):
        """Test the primary model is not tried twice."""
        oracle = TicketMatchingOracle(config, generator=FakeGenerator([]), sleep=Mock())
        assert oracle.models_to_try == ["primary", "backup-1", "backup-2"]

    def test_retries_with_exponential_backoff(self, config):
        """Test transient errors are retried on the same model."""
        sleep = Mock()
        generator = FakeGenerator([
            OracleTimeoutError("t1"),
            OracleTimeoutError("t2"),
            "ok",
        ])
        oracle = TicketMatchingOracle(config, generator=generator, sleep=sleep)

        assert oracle.call_with_fallback("prompt", 30) == "ok"
        assert [call[0] for call in generator.calls] == ["primary"] * 3
        delays = [call.args[0] for call in sleep.call_args_list]
        assert len(delays) == 2
        assert delays[1] > delays[0]
        assert all(delay <= config.backoff_max for delay in delays)

    def test_model_not_found_advances_immediately(self, config):
        """Test missing models skip their retries."""
        sleep = Mock()
        generator = FakeGenerator([ModelNotFoundError("404"), "ok"])
        oracle = TicketMatchingOracle(config, generator=generator, sleep=sleep)

        assert oracle.call_with_fallback("prompt", 30) == "ok"
        assert [call[0] for call in generator.calls] == ["primary", "backup-1"]
        sleep.assert_not_called()

    def test_quota_advances_immediately(self, config):
        """Test rate limited models skip their retries."""
        generator = FakeGenerator([QuotaExceededError("429"), QuotaExceededError("429"), "ok"])
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        assert oracle.call_with_fallback("prompt", 30) == "ok"
        assert [call[0] for call in generator.calls] == ["primary", "backup-1", "backup-2"]

    def test_exhausted_retries_advance(self, config):
        """Test a model that keeps failing hands over after max_retries."""
        generator = FakeGenerator([OracleTimeoutError("t")] * 3 + ["ok"])
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        assert oracle.call_with_fallback("prompt", 30) == "ok"
        assert [call[0] for call in generator.calls] == ["primary"] * 3 + ["backup-1"]

    def test_all_models_exhausted(self, config):
        """Test the cascade fails once every model has failed."""
        generator = FakeGenerator([ModelNotFoundError("404")] * 3)
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        with pytest.raises(OracleUnavailableError) as exc_info:
            oracle.call_with_fallback("prompt", 30)
        assert isinstance(exc_info.value.__cause__, ModelNotFoundError)


# =============================================================================
# Matching
# =============================================================================

class TestBatchFindTicketMatches:
    """Tests for batched matching."""

    def test_batch_uses_filtered_universe(self, config, tasks, tickets):
        """Test excluded and off-project tickets never reach the prompt."""
        generator = Mock()
        generator.generate.return_value = batch_reply(
            {"taskIndex": 1, "bestMatch": {"ticketKey": "EW-1", "confidence": 0.9}},
        )
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        results = oracle.batch_find_ticket_matches(tasks, tickets)

        prompt, model, timeout = generator.generate.call_args.args
        assert "EW-1:" in prompt
        assert "EW-2:" not in prompt
        assert "EW-3:" not in prompt
        assert timeout == config.batch_timeout
        assert results[0].best_match.ticket_key == "EW-1"
        assert results[1].best_match is None

    def test_empty_universe_skips_call(self, config, tasks):
        """Test no request is made when nothing is eligible."""
        generator = Mock()
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        results = oracle.batch_find_ticket_matches(tasks, [])

        generator.generate.assert_not_called()
        assert len(results) == 2
        assert all(result.best_match is None for result in results)

    def test_no_tasks(self, config, tickets):
        """Test an empty batch returns immediately."""
        oracle = TicketMatchingOracle(config, generator=Mock(), sleep=Mock())
        assert oracle.batch_find_ticket_matches([], tickets) == []

    def test_malformed_reply_is_not_retried(self, config, tasks, tickets):
        """Test contract violations surface without another call."""
        generator = Mock()
        generator.generate.return_value = "sorry"
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        with pytest.raises(OracleResponseError):
            oracle.batch_find_ticket_matches(tasks, tickets)
        assert generator.generate.call_count == 1


class TestFindBestTicketMatch:
    """Tests for single-task matching."""

    def test_uses_single_timeout(self, config, tickets):
        """Test single-task calls use the shorter timeout."""
        generator = Mock()
        generator.generate.return_value = '{"bestMatch": {"ticketKey": "EW-2", "confidence": 0.7}}'
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        result = oracle.find_best_ticket_match("Deploy pipeline", tickets)

        assert result.best_match.ticket_key == "EW-2"
        assert generator.generate.call_args.args[2] == config.timeout

    def test_no_eligible_tickets(self, config, tickets):
        """Test None is returned without a call when nothing is eligible."""
        generator = Mock()
        oracle = TicketMatchingOracle(config, generator=generator, sleep=Mock())

        assert oracle.find_best_ticket_match("x", tickets, "unknown-project") is None
        generator.generate.assert_not_called()


# =============================================================================
# Construction
# =============================================================================

class TestOracleConstruction:
    """Tests for oracle and generator construction."""

    def test_missing_key_raises(self):
        """Test the default generator needs an API key."""
        with pytest.raises(OracleNotConfiguredError):
            TicketMatchingOracle(OracleConfig(api_key=""))

    def test_create_oracle_disabled(self):
        """Test no oracle without an API key."""
        assert create_oracle(OracleConfig(api_key="")) is None

    @patch("timesheet_matcher.oracle.OpenAI")
    def test_create_oracle_enabled(self, mock_openai):
        """Test the OpenAI client targets the configured endpoint."""
        oracle = create_oracle(OracleConfig(api_key="key", api_base_url="https://example.test/"))

        assert isinstance(oracle, TicketMatchingOracle)
        mock_openai.assert_called_once_with(
            api_key="key",
            max_retries=0,
            base_url="https://example.test/",
        )

    @patch("timesheet_matcher.oracle.OpenAI")
    def test_generator_passes_timeout(self, mock_openai):
        """Test each completion call carries the wall-clock limit."""
        mock_client = MagicMock()
        mock_client.chat.completions.create.return_value.choices = [
            Mock(message=Mock(content="reply"))
        ]
        mock_openai.return_value = mock_client

        generator = GeminiGenerator(OracleConfig(api_key="key", temperature=0.1))
        assert generator.generate("prompt", "gemini-2.5-flash", 45) == "reply"

        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gemini-2.5-flash"
        assert kwargs["timeout"] == 45
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    @patch("timesheet_matcher.oracle.OpenAI")
    def test_list_models(self, mock_openai):
        """Test model listing goes through the generator."""
        mock_openai.return_value.models.list.return_value = [Mock(id="m1"), Mock(id="m2")]
        oracle = create_oracle(OracleConfig(api_key="key"))
        assert oracle.list_models() == ["m1", "m2"]
