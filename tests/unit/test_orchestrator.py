"""
Unit tests for wallbounce.core.orchestrator.

Tests cover:
- Parallel rounds: agreement, tier minimums, escalation and the deadline
- Response cache hits on repeated prompts
- Circuit breaker feedback and skipping of open circuits
- Candidate filtering by allow-list and invocation path
- Sequential refinement chains
- Aggregator synthesis and shortfall fallback
- Session continuation, progress events and metrics
"""

import time

import pytest

from helpers import (
    NEAR_IDENTICAL,
    ScriptedProvider,
    ScriptedSdkProvider,
    build_registry,
    failing,
    make_descriptor,
    providers_in_order,
    timing_out,
)
from wallbounce.core.cache import ResponseCache
from wallbounce.core.errors import (
    ConsensusBelowThresholdError,
    InsufficientProvidersError,
    SessionError,
)
from wallbounce.core.events import (
    CollectingEventSink,
    ConsensusUpdateEvent,
    EscalationStartEvent,
    ProviderCompleteEvent,
)
from wallbounce.core.metrics import (
    ESCALATIONS,
    PROVIDER_INVOCATIONS,
    REQUESTS,
    InMemoryMetricsSink,
)
from wallbounce.core.models import AnalysisRequest, ExecutionMode, InvocationOutcome, TaskTier
from wallbounce.core.orchestrator import Orchestrator
from wallbounce.core.prompts import AGGREGATOR_SYSTEM_PROMPT
from wallbounce.core.providers.base import InvocationKind
from wallbounce.core.resilience import CircuitState
from wallbounce.core.sessions import InMemorySessionStore


DISAGREEING = {
    "alpha": "alpha beta gamma delta",
    "beta": "alpha beta epsilon zeta",
    "gamma": "alpha beta eta theta",
}


# =============================================================================
# Test Fixtures
# =============================================================================


def make_orchestrator(config, adapters, *, extra=(), **kwargs):
    """Orchestrator over ``adapters`` (priority = list order) plus extra registry entries."""
    entries = providers_in_order(adapters) + list(extra)
    registry = build_registry(entries, config)
    return Orchestrator(config, registry, **kwargs)


@pytest.fixture
def near_identical():
    return [ScriptedProvider(name, text) for name, text in NEAR_IDENTICAL.items()]


# =============================================================================
# Parallel Execution Tests
# =============================================================================


class TestParallelExecution:
    """Tests for the default parallel mode."""

    def test_near_identical_answers_meet_thresholds(self, config, near_identical):
        """Three agreeing premium providers should score high without escalation."""
        orchestrator = make_orchestrator(config, near_identical)

        result = orchestrator.execute(AnalysisRequest(prompt="How should we cache?", tier=TaskTier.PREMIUM))

        assert result.agreement >= 0.9
        assert result.confidence >= 0.85
        assert result.thresholds_met is True
        assert result.escalated is False
        assert result.escalation_rounds == 0
        assert len(result.invocations) == 3
        assert result.answer in NEAR_IDENTICAL.values()
        assert result.tier is TaskTier.PREMIUM
        assert result.mode is ExecutionMode.PARALLEL

    def test_round_invokes_only_tier_minimum(self, config, near_identical):
        """Basic tier should invoke its two highest-priority providers."""
        orchestrator = make_orchestrator(config, near_identical)

        result = orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.BASIC))

        assert [inv.provider_id for inv in result.invocations] == ["alpha", "beta"]
        assert near_identical[2].calls == 0

    def test_one_timeout_below_basic_minimum_raises(self, config):
        """One timeout plus one success is below the basic minimum of two."""
        orchestrator = make_orchestrator(config, [timing_out("alpha"), ScriptedProvider("beta", "fine")])

        with pytest.raises(InsufficientProvidersError) as exc_info:
            orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.BASIC))

        error = exc_info.value
        assert error.required == 2
        assert error.succeeded == 1
        outcomes = {r.provider_id: r.outcome for r in error.results}
        assert outcomes == {"alpha": InvocationOutcome.TIMEOUT, "beta": InvocationOutcome.SUCCESS}

    def test_deadline_abandons_slow_provider(self, config, release_gates):
        """A provider still running at the deadline is recorded as a timeout."""
        slow = ScriptedProvider("alpha", "late answer", gate=release_gates())
        orchestrator = make_orchestrator(config, [slow, ScriptedProvider("beta", "fine")])

        started = time.monotonic()
        with pytest.raises(InsufficientProvidersError) as exc_info:
            orchestrator.execute(AnalysisRequest.create("q", tier="basic", timeout=0.2))
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        timed_out = [r for r in exc_info.value.results if r.provider_id == "alpha"][0]
        assert timed_out.outcome is InvocationOutcome.TIMEOUT
        assert "deadline" in timed_out.error
        assert orchestrator.registry.breaker("alpha").snapshot().consecutive_failures == 1

    def test_past_deadline_invokes_nothing(self, config, near_identical):
        """A request whose deadline already passed should not call providers."""
        orchestrator = make_orchestrator(config, near_identical)

        with pytest.raises(InsufficientProvidersError):
            orchestrator.execute(AnalysisRequest(prompt="q", deadline=time.time() - 1))

        assert all(adapter.calls == 0 for adapter in near_identical)

    def test_empty_response_counts_as_failure(self, config):
        """Blank content should not count toward the minimum."""
        orchestrator = make_orchestrator(config, [ScriptedProvider("alpha", "   "), ScriptedProvider("beta", "ok")])

        with pytest.raises(InsufficientProvidersError) as exc_info:
            orchestrator.execute(AnalysisRequest(prompt="q"))

        blank = [r for r in exc_info.value.results if r.provider_id == "alpha"][0]
        assert blank.outcome is InvocationOutcome.ERROR

    def test_usage_and_cost_are_recorded(self, config, near_identical):
        """Invocation results should carry token usage and a cost estimate."""
        orchestrator = make_orchestrator(config, near_identical)

        result = orchestrator.execute(AnalysisRequest(prompt="q"))

        assert all(inv.tokens.effective_total == 30 for inv in result.invocations)
        assert result.total_tokens == 60
        assert result.total_cost > 0


# =============================================================================
# Escalation Tests
# =============================================================================


class TestEscalation:
    """Tests for the single bounded escalation round."""

    def test_low_agreement_escalates_to_fallback(self, config):
        """Critical tier below the agreement threshold should add one fallback provider."""
        adapters = [ScriptedProvider(name, text) for name, text in DISAGREEING.items()]
        reserve = ScriptedProvider("reserve", "alpha beta reserve answer")
        events = CollectingEventSink()
        orchestrator = make_orchestrator(
            config,
            adapters,
            extra=[(make_descriptor("reserve", priority=90, fallback=True), reserve)],
            events=events,
        )

        result = orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.CRITICAL))

        assert result.escalated is True
        assert result.escalation_rounds == 1
        assert reserve.calls == 1
        assert len(result.invocations) == 4
        assert result.invocations[-1].round == 1
        escalations = events.of_type(EscalationStartEvent)
        assert len(escalations) == 1
        assert escalations[0].from_tier == "critical"
        assert escalations[0].to_tier == "critical"

    def test_basic_escalates_to_premium_providers(self, config):
        """Basic escalation should add premium providers up to the premium maximum."""
        adapters = [ScriptedProvider(name, text) for name, text in DISAGREEING.items()]
        metrics = InMemoryMetricsSink()
        orchestrator = make_orchestrator(config, adapters, metrics=metrics)

        result = orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.BASIC))

        assert result.escalation_rounds == 1
        assert result.tier is TaskTier.PREMIUM
        assert [inv.provider_id for inv in result.invocations] == ["alpha", "beta", "gamma"]
        assert metrics.counter_value(ESCALATIONS, tier="basic") == 1

    def test_escalated_flag_without_extra_providers(self, config):
        """Unmet thresholds set the flag even when no provider is left to add."""
        adapters = [ScriptedProvider(name, text) for name, text in DISAGREEING.items()]
        orchestrator = make_orchestrator(config, adapters)

        result = orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.CRITICAL))

        assert result.escalated is True
        assert result.thresholds_met is False
        assert result.escalation_rounds == 0
        assert len(result.invocations) == 3

    def test_tier_forbidding_low_confidence_raises(self, config):
        """A tier with allow_low_confidence=False should raise after escalation."""
        config.tiers["basic"].escalate_to = None
        config.tiers["basic"].allow_low_confidence = False
        adapters = [ScriptedProvider(name, text) for name, text in DISAGREEING.items()]
        metrics = InMemoryMetricsSink()
        orchestrator = make_orchestrator(config, adapters, metrics=metrics)

        with pytest.raises(ConsensusBelowThresholdError) as exc_info:
            orchestrator.execute(AnalysisRequest(prompt="q", tier=TaskTier.BASIC))

        assert exc_info.value.result.thresholds_met is False
        assert metrics.counter_value(REQUESTS, tier="basic", status="below_threshold") == 1


# =============================================================================
# Cache Tests
# =============================================================================


class TestCaching:
    """Tests for response cache integration."""

    def test_repeat_prompt_is_served_from_cache(self, config, near_identical):
        """The second identical request should hit the cache with zero latency."""
        orchestrator = make_orchestrator(config, near_identical, cache=ResponseCache(ttl_seconds=60))

        first = orchestrator.execute(AnalysisRequest(prompt="same prompt"))
        second = orchestrator.execute(AnalysisRequest(prompt="same prompt"))

        assert not any(inv.cache_hit for inv in first.invocations)
        assert all(inv.cache_hit for inv in second.invocations)
        assert all(inv.latency_ms == 0.0 for inv in second.invocations)
        assert near_identical[0].calls == 1
        assert near_identical[1].calls == 1
        assert second.answer == first.answer

    def test_whitespace_variants_share_cache_entry(self, config, near_identical):
        """Prompts differing only in whitespace should share a key."""
        orchestrator = make_orchestrator(config, near_identical, cache=ResponseCache(ttl_seconds=60))

        orchestrator.execute(AnalysisRequest(prompt="same   prompt"))
        second = orchestrator.execute(AnalysisRequest(prompt=" same prompt\n"))

        assert all(inv.cache_hit for inv in second.invocations)

    @pytest.mark.parametrize(
        "first, changed",
        [
            ({"temperature": 0.1}, {"temperature": 0.9}),
            ({"max_tokens": 100}, {"max_tokens": 200}),
            ({}, {"system_prompt": "Answer tersely"}),
        ],
    )
    def test_different_parameters_miss_cache(self, config, near_identical, first, changed):
        """A changed generation parameter should produce a new cache key."""
        orchestrator = make_orchestrator(config, near_identical, cache=ResponseCache(ttl_seconds=60))

        orchestrator.execute(AnalysisRequest(prompt="p", **first))
        second = orchestrator.execute(AnalysisRequest(prompt="p", **changed))

        assert not any(inv.cache_hit for inv in second.invocations)

    def test_cache_hits_do_not_touch_breaker(self, config, near_identical):
        """Cache hits are neither successes nor failures for the breaker."""
        orchestrator = make_orchestrator(config, near_identical, cache=ResponseCache(ttl_seconds=60))
        orchestrator.execute(AnalysisRequest(prompt="p"))
        breaker = orchestrator.registry.breaker("alpha")
        breaker.record_failure()

        orchestrator.execute(AnalysisRequest(prompt="p"))

        assert breaker.snapshot().consecutive_failures == 1

    def test_failures_are_not_cached(self, config):
        """Only successful responses are stored."""
        alpha = failing("alpha")
        beta = ScriptedProvider("beta", "b")
        orchestrator = make_orchestrator(config, [alpha, beta], cache=ResponseCache(ttl_seconds=60))

        for _ in range(2):
            with pytest.raises(InsufficientProvidersError):
                orchestrator.execute(AnalysisRequest(prompt="p"))

        assert alpha.calls == 2
        assert beta.calls == 1


# =============================================================================
# Circuit Breaker Tests
# =============================================================================


class TestCircuitBreaking:
    """Tests for breaker feedback and open-circuit skipping."""

    def test_failures_feed_breaker(self, config):
        """Each failed invocation counts toward the provider's breaker."""
        orchestrator = make_orchestrator(config, [failing("alpha"), ScriptedProvider("beta", "b")])

        with pytest.raises(InsufficientProvidersError):
            orchestrator.execute(AnalysisRequest(prompt="p"))

        assert orchestrator.registry.breaker("alpha").snapshot().consecutive_failures == 1
        assert orchestrator.registry.breaker("beta").snapshot().consecutive_failures == 0

    def test_success_clears_failures(self, config, near_identical):
        orchestrator = make_orchestrator(config, near_identical)
        orchestrator.registry.breaker("alpha").record_failure()

        orchestrator.execute(AnalysisRequest(prompt="p"))

        assert orchestrator.registry.breaker("alpha").snapshot().consecutive_failures == 0

    def test_open_circuit_is_skipped(self, config, near_identical):
        """Providers with an open circuit are not invoked; the next candidate is."""
        orchestrator = make_orchestrator(config, near_identical)
        breaker = orchestrator.registry.breaker("alpha")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert near_identical[0].calls == 0
        assert [inv.provider_id for inv in result.invocations] == ["beta", "gamma"]

    def test_repeated_failures_open_circuit(self, config):
        """Failure threshold reached across requests opens the circuit."""
        config.circuit_breaker.failure_threshold = 2
        config.tiers["basic"].min_providers = 1
        alpha = failing("alpha")
        orchestrator = make_orchestrator(config, [alpha, ScriptedProvider("beta", "b")])

        for _ in range(2):
            with pytest.raises(InsufficientProvidersError):
                orchestrator.execute(AnalysisRequest(prompt="p", providers=("alpha",)))
        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert orchestrator.registry.breaker("alpha").state is CircuitState.OPEN
        assert alpha.calls == 2
        assert result.providers_used == ("beta",)


# =============================================================================
# Candidate Filtering Tests
# =============================================================================


class TestCandidateFiltering:
    """Tests for allow-lists and invocation path restrictions."""

    def test_allow_list_restricts_providers(self, config, near_identical):
        orchestrator = make_orchestrator(config, near_identical)

        result = orchestrator.execute(AnalysisRequest(prompt="p", providers=("beta", "gamma")))

        assert set(result.providers_used) == {"beta", "gamma"}
        assert near_identical[0].calls == 0

    def test_invocation_paths_exclude_other_kinds(self, config):
        """A request restricted to SDK should only reach SDK providers."""
        sdk_a = ScriptedSdkProvider("sdk-a", NEAR_IDENTICAL["alpha"])
        sdk_b = ScriptedSdkProvider("sdk-b", NEAR_IDENTICAL["beta"])
        cli = ScriptedProvider("cli", NEAR_IDENTICAL["gamma"])
        orchestrator = make_orchestrator(config, [cli, sdk_a, sdk_b])

        result = orchestrator.execute(
            AnalysisRequest(prompt="p", invocation_paths=frozenset({InvocationKind.SDK}))
        )

        assert cli.calls == 0
        assert set(result.providers_used) == {"sdk-a", "sdk-b"}


# =============================================================================
# Sequential Mode Tests
# =============================================================================


class TestSequentialMode:
    """Tests for the sequential refinement chain."""

    def test_chain_rotates_and_surfaces_last_step(self, config):
        alpha = ScriptedProvider("alpha", "first draft about caching")
        beta = ScriptedProvider("beta", "refined draft about caching")
        orchestrator = make_orchestrator(config, [alpha, beta])

        result = orchestrator.execute(
            AnalysisRequest(prompt="Design a cache", mode=ExecutionMode.SEQUENTIAL, depth=3)
        )

        assert [inv.provider_id for inv in result.invocations] == ["alpha", "beta", "alpha"]
        assert [inv.step for inv in result.invocations] == [1, 2, 3]
        assert result.answer == "first draft about caching"
        assert result.selected_provider == "alpha"
        assert result.mode is ExecutionMode.SEQUENTIAL
        assert "[Progress: step 2/3]" in beta.requests[0].prompt
        assert "first draft about caching" in beta.requests[0].prompt

    def test_failed_provider_is_skipped(self, config):
        alpha = ScriptedProvider("alpha", "answer one")
        gamma = ScriptedProvider("gamma", "answer two")
        orchestrator = make_orchestrator(config, [alpha, failing("beta"), gamma])

        result = orchestrator.execute(AnalysisRequest(prompt="p", mode="sequential", depth=4))

        assert [inv.provider_id for inv in result.invocations] == ["alpha", "beta", "gamma", "alpha"]
        assert result.invocations[1].outcome is InvocationOutcome.ERROR

    def test_invalid_depth_falls_back_to_three(self, config, near_identical):
        orchestrator = make_orchestrator(config, near_identical)

        result = orchestrator.execute(AnalysisRequest(prompt="p", mode="sequential", depth=9))

        assert len(result.invocations) == 3

    def test_chain_below_minimum_raises(self, config):
        orchestrator = make_orchestrator(config, [failing("alpha"), failing("beta")])

        with pytest.raises(InsufficientProvidersError):
            orchestrator.execute(AnalysisRequest(prompt="p", mode="sequential", depth=3))

    def test_low_agreement_chain_escalates_once(self, config):
        """A chain below the thresholds adds a refinement step from an unused premium provider."""
        alpha = ScriptedProvider("alpha", DISAGREEING["alpha"])
        beta = ScriptedProvider("beta", DISAGREEING["beta"])
        gamma = ScriptedProvider("gamma", DISAGREEING["gamma"])
        events = CollectingEventSink()
        metrics = InMemoryMetricsSink()
        orchestrator = make_orchestrator(
            config,
            [alpha, beta],
            extra=[(make_descriptor("gamma", priority=50, tiers=("premium",)), gamma)],
            events=events,
            metrics=metrics,
        )

        result = orchestrator.execute(AnalysisRequest(prompt="q", mode=ExecutionMode.SEQUENTIAL, depth=3))

        assert [inv.provider_id for inv in result.invocations] == ["alpha", "beta", "alpha", "gamma"]
        assert [inv.step for inv in result.invocations] == [1, 2, 3, 4]
        assert [inv.round for inv in result.invocations] == [0, 0, 0, 1]
        assert result.escalated is True
        assert result.escalation_rounds == 1
        assert result.tier is TaskTier.PREMIUM
        assert result.answer == DISAGREEING["gamma"]
        assert "[Progress: step 4/4]" in gamma.requests[0].prompt
        assert DISAGREEING["alpha"] in gamma.requests[0].prompt
        assert len(events.of_type(EscalationStartEvent)) == 1
        assert metrics.counter_value(ESCALATIONS, tier="basic") == 1

    def test_chain_without_unused_providers_only_flags(self, config):
        adapters = [ScriptedProvider(name, text) for name, text in DISAGREEING.items()]
        orchestrator = make_orchestrator(config, adapters)

        result = orchestrator.execute(AnalysisRequest(prompt="q", mode=ExecutionMode.SEQUENTIAL, depth=3))

        assert len(result.invocations) == 3
        assert result.escalated is True
        assert result.escalation_rounds == 0
        assert result.tier is TaskTier.BASIC


# =============================================================================
# Aggregation and Fallback Tests
# =============================================================================


class TestAggregationAndFallback:
    """Tests for the aggregator surface and shortfall fallback."""

    def test_aggregator_answer_replaces_selection(self, config, near_identical):
        config.aggregation.enabled = True
        config.aggregation.default_provider = "judge"
        judge = ScriptedProvider("judge", "synthesized answer")
        orchestrator = make_orchestrator(
            config,
            near_identical,
            extra=[(make_descriptor("judge", tiers=("aggregation",), priority=5), judge)],
        )

        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert result.answer == "synthesized answer"
        assert result.aggregator_id == "judge"
        assert "judge" not in result.providers_used
        assert result.invocations[-1].provider_id == "judge"
        assert judge.requests[0].system_prompt == AGGREGATOR_SYSTEM_PROMPT
        assert "Individual answers:" in judge.requests[0].prompt

    def test_failed_aggregator_keeps_weighted_pick(self, config, near_identical):
        config.aggregation.enabled = True
        config.aggregation.default_provider = "judge"
        orchestrator = make_orchestrator(
            config,
            near_identical,
            extra=[(make_descriptor("judge", tiers=("aggregation",)), failing("judge"))],
        )

        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert result.aggregator_id is None
        assert result.answer in NEAR_IDENTICAL.values()

    def test_shortfall_uses_fallback_provider(self, config):
        config.orchestrator.fallback_on_shortfall = True
        reserve = ScriptedProvider("reserve", NEAR_IDENTICAL["gamma"])
        orchestrator = make_orchestrator(
            config,
            [failing("alpha"), ScriptedProvider("beta", NEAR_IDENTICAL["beta"])],
            extra=[(make_descriptor("reserve", priority=90, fallback=True), reserve)],
        )

        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert reserve.calls == 1
        assert set(result.providers_used) == {"beta", "reserve"}

    def test_fallback_not_used_without_shortfall_flag(self, config):
        reserve = ScriptedProvider("reserve", "r")
        orchestrator = make_orchestrator(
            config,
            [failing("alpha"), ScriptedProvider("beta", "b")],
            extra=[(make_descriptor("reserve", priority=90, fallback=True), reserve)],
        )

        with pytest.raises(InsufficientProvidersError):
            orchestrator.execute(AnalysisRequest(prompt="p"))
        assert reserve.calls == 0


# =============================================================================
# Session Tests
# =============================================================================


class TestSessions:
    """Tests for session continuation."""

    def test_turns_are_appended_and_replayed(self, config, near_identical):
        sessions = InMemorySessionStore()
        orchestrator = make_orchestrator(config, near_identical, sessions=sessions)

        first = orchestrator.execute(AnalysisRequest(prompt="first question", session_id="s1", owner="alice"))
        orchestrator.execute(AnalysisRequest(prompt="follow up", session_id="s1", owner="alice"))

        record = sessions.get("s1")
        assert record.owner == "alice"
        assert [turn.request_text for turn in record.turns] == ["first question", "follow up"]
        assert record.turns[0].answer == first.answer
        assert record.turns[0].request_id == first.request_id
        context = near_identical[0].requests[-1].context
        assert context.startswith("Conversation so far:")
        assert "first question" in context

    def test_owner_mismatch_raises(self, config, near_identical):
        sessions = InMemorySessionStore()
        sessions.create("alice", session_id="s1")
        orchestrator = make_orchestrator(config, near_identical, sessions=sessions)

        with pytest.raises(SessionError):
            orchestrator.execute(AnalysisRequest(prompt="p", session_id="s1", owner="mallory"))

    def test_result_carries_session_id(self, config, near_identical):
        orchestrator = make_orchestrator(config, near_identical, sessions=InMemorySessionStore())

        result = orchestrator.execute(AnalysisRequest(prompt="p", session_id="s9"))

        assert result.session_id == "s9"


# =============================================================================
# Events and Metrics Tests
# =============================================================================


class TestObservability:
    """Tests for progress events and metric recording."""

    def test_events_are_emitted_in_order(self, config, near_identical):
        events = CollectingEventSink()
        orchestrator = make_orchestrator(config, near_identical, events=events)
        request = AnalysisRequest(prompt="p")

        orchestrator.execute(request)

        types = events.types()
        assert types.count("provider:start") == 2
        assert types.count("provider:complete") == 2
        assert types[-1] == "consensus:update"
        assert all(event.request_id == request.request_id for event in events.events)
        update = events.of_type(ConsensusUpdateEvent)[0]
        assert set(update.providers) == {"alpha", "beta"}

    def test_cache_hit_events_are_marked(self, config, near_identical):
        events = CollectingEventSink()
        orchestrator = make_orchestrator(config, near_identical, cache=ResponseCache(), events=events)
        orchestrator.execute(AnalysisRequest(prompt="p"))

        orchestrator.execute(AnalysisRequest(prompt="p"))

        completes = events.of_type(ProviderCompleteEvent)
        assert [event.cache_hit for event in completes] == [False, False, True, True]

    def test_failing_sink_does_not_fail_request(self, config, near_identical):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink down")

        orchestrator = make_orchestrator(config, near_identical, events=BrokenSink())

        result = orchestrator.execute(AnalysisRequest(prompt="p"))

        assert result.answer

    def test_metrics_are_recorded(self, config, near_identical):
        metrics = InMemoryMetricsSink()
        orchestrator = make_orchestrator(config, near_identical, metrics=metrics)

        orchestrator.execute(AnalysisRequest(prompt="p"))

        assert metrics.counter_value(REQUESTS, tier="basic", status="success") == 1
        assert metrics.counter_value(PROVIDER_INVOCATIONS, provider="alpha", outcome="success") == 1
        assert len(metrics.observed("consensus_confidence")) == 1

    def test_insufficient_requests_are_counted(self, config):
        metrics = InMemoryMetricsSink()
        orchestrator = make_orchestrator(config, [failing("alpha"), failing("beta")], metrics=metrics)

        with pytest.raises(InsufficientProvidersError):
            orchestrator.execute(AnalysisRequest(prompt="p"))

        assert metrics.counter_value(REQUESTS, tier="basic", status="insufficient") == 1
