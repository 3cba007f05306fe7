"""
End-to-end orchestration through the real adapters.

The default provider catalog (gemini, codex, claude CLIs) is built from
configuration with simulated CLI runners injected, so command building,
output parsing, file-backed caching and file-backed sessions are exercised
together.
"""

import pytest

from wallbounce.config import WallbounceConfig
from wallbounce.core.errors import InsufficientProvidersError
from wallbounce.core.events import CollectingEventSink
from wallbounce.core.metrics import InMemoryMetricsSink, REQUESTS
from wallbounce.core.models import AnalysisRequest, ExecutionMode, InvocationOutcome
from wallbounce.core.orchestrator import Orchestrator


@pytest.fixture
def config(tmp_path):
    cfg = WallbounceConfig()
    cfg.cache.backend = "file"
    cfg.cache.directory = tmp_path / "cache"
    cfg.sessions.backend = "file"
    cfg.sessions.directory = tmp_path / "sessions"
    cfg.orchestrator.default_timeout = 10.0
    return cfg


def build(config, clis, **kwargs):
    dependencies = {provider_id: {"runner": runner} for provider_id, runner in clis.items()}
    return Orchestrator.from_config(config, dependencies=dependencies, start_sweeper=False, **kwargs)


class TestPremiumRequest:
    def test_three_cli_providers_agree(self, config, simulated_clis):
        events = CollectingEventSink()
        metrics = InMemoryMetricsSink()
        orchestrator = build(config, simulated_clis, events=events, metrics=metrics)

        result = orchestrator.execute(AnalysisRequest.create("How should we cache?", tier="premium", timeout=10))

        assert set(result.providers_used) == {"gemini", "codex", "claude"}
        assert result.thresholds_met is True
        assert result.escalation_rounds == 0
        assert result.total_tokens == 180
        assert metrics.counter_value(REQUESTS, tier="premium", status="success") == 1
        assert events.types()[-1] == "consensus:update"

        claude_argv = simulated_clis["claude"].commands[0]
        assert "--disallowed-tools" in claude_argv
        codex_argv = simulated_clis["codex"].commands[0]
        assert codex_argv[1:4] == ["exec", "--sandbox", "read-only"]

    def test_repeat_is_served_from_file_cache(self, config, simulated_clis, tmp_path):
        orchestrator = build(config, simulated_clis)
        orchestrator.execute(AnalysisRequest.create("How should we cache?", tier="premium", timeout=10))

        # A fresh orchestrator over the same directory still hits the cache.
        second = build(config, simulated_clis).execute(
            AnalysisRequest.create("How  should we cache?", tier="premium", timeout=10)
        )

        assert all(inv.cache_hit for inv in second.invocations)
        assert all(len(cli.commands) == 1 for cli in simulated_clis.values())
        assert any((tmp_path / "cache").glob("*/*.json"))

    def test_crashing_cli_is_reported(self, config, simulated_clis):
        simulated_clis["claude"].returncode = 3
        orchestrator = build(config, simulated_clis)

        with pytest.raises(InsufficientProvidersError) as exc_info:
            orchestrator.execute(AnalysisRequest.create("q", tier="premium", timeout=10))

        outcomes = {r.provider_id: r.outcome for r in exc_info.value.results}
        assert outcomes["claude"] is InvocationOutcome.ERROR
        assert "claude crashed" in next(r.error for r in exc_info.value.results if r.provider_id == "claude")
        assert orchestrator.registry.breaker("claude").snapshot().consecutive_failures == 1


class TestSessionsAcrossRequests:
    def test_second_turn_carries_context(self, config, simulated_clis, tmp_path):
        orchestrator = build(config, simulated_clis)
        orchestrator.execute(
            AnalysisRequest.create("What TTL?", tier="basic", timeout=10, session_id="s-int", owner="alice")
        )
        orchestrator.execute(
            AnalysisRequest.create("And retries?", tier="basic", timeout=10, session_id="s-int", owner="alice")
        )

        prompt = simulated_clis["gemini"].commands[-1][-1]
        assert "Conversation so far:" in prompt
        assert "[1] User: What TTL?" in prompt
        assert prompt.endswith("And retries?")

        record = build(config, simulated_clis).sessions.get("s-int")
        assert [turn.request_text for turn in record.turns] == ["What TTL?", "And retries?"]


class TestSequentialChain:
    def test_chain_rotates_through_catalog(self, config, simulated_clis):
        orchestrator = build(config, simulated_clis)

        result = orchestrator.execute(
            AnalysisRequest.create("Review the rollout plan", tier="premium", mode=ExecutionMode.SEQUENTIAL, depth=4)
        )

        assert [inv.provider_id for inv in result.invocations] == ["gemini", "codex", "claude", "gemini"]
        assert result.answer == simulated_clis["gemini"].answer
        assert "[Progress: step 4/4]" in simulated_clis["gemini"].commands[-1][-1]


@pytest.mark.live_providers
class TestLiveProviders:
    @pytest.mark.gemini
    def test_gemini_smoke(self, live_prompt):
        config = WallbounceConfig()
        orchestrator = Orchestrator.from_config(config, start_sweeper=False)
        result = orchestrator.registry.adapter("gemini").invoke(live_prompt, timeout=120)
        assert "PONG" in result.content.upper()

    @pytest.mark.claude
    def test_claude_smoke(self, live_prompt):
        config = WallbounceConfig()
        orchestrator = Orchestrator.from_config(config, start_sweeper=False)
        result = orchestrator.registry.adapter("claude").invoke(live_prompt, timeout=120)
        assert "PONG" in result.content.upper()
