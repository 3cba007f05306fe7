"""
Unit tests for the CLI-backed and SDK provider implementations.

Tests cover each provider (Claude, Codex, Gemini, SDK) with:
- Factory defaults and overrides
- Command building (mocked subprocess runner)
- Output parsing and token usage extraction
- Error handling (timeout, unavailable binary, non-zero exit, bad payloads)
- Availability overrides
"""

import json
import subprocess
from typing import Dict, List, Optional, Sequence

import pytest

from wallbounce.core.errors import (
    ProviderInvocationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from wallbounce.core.providers import claude, codex, gemini, sdk
from wallbounce.core.providers.base import ProviderHooks, ProviderRequest, ProviderStatus
from wallbounce.core.providers.process import detect_binary


# =============================================================================
# Test Fixtures and Helpers
# =============================================================================


def make_mock_runner(
    stdout: str = "",
    stderr: str = "",
    returncode: int = 0,
    raises: Optional[Exception] = None,
    calls: Optional[List[List[str]]] = None,
):
    """Create a mock runner that returns specified subprocess result."""

    def runner(
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input_data: Optional[str] = None,
    ):
        if calls is not None:
            calls.append(list(command))
        if raises:
            raise raises
        return subprocess.CompletedProcess(
            args=list(command),
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
        )

    return runner


@pytest.fixture
def hooks():
    """Provide default empty hooks."""
    return ProviderHooks()


def claude_payload(**overrides):
    payload = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": "Use a circuit breaker.",
        "usage": {"input_tokens": 12, "output_tokens": 5, "cache_read_input_tokens": 3},
        "modelUsage": {"claude-sonnet-4": {}},
    }
    payload.update(overrides)
    return json.dumps(payload)


def codex_stream(*events):
    return "\n".join(json.dumps(event) for event in events)


# =============================================================================
# ClaudeProvider Tests
# =============================================================================


class TestClaudeProvider:
    """Tests for ClaudeProvider implementation."""

    def test_default_model_and_binary(self, hooks):
        provider = claude.create_provider(hooks=hooks)
        assert provider.model == "sonnet"
        assert provider.binary == "claude"
        assert provider.provider_id == "claude"

    def test_binary_from_environment(self, hooks, monkeypatch):
        monkeypatch.setenv("CLAUDE_CLI_BINARY", "/usr/local/bin/claude-dev")
        assert claude.create_provider(hooks=hooks).binary == "/usr/local/bin/claude-dev"

    def test_command_structure(self, hooks):
        """Print mode, JSON output, write tools disabled, model last."""
        calls = []
        provider = claude.create_provider(
            hooks=hooks, model="opus", dependencies={"runner": make_mock_runner(claude_payload(), calls=calls)}
        )

        provider.generate(ProviderRequest(prompt="Review this", system_prompt="Be terse"))

        command = calls[0]
        assert command[:5] == ["claude", "--print", "Review this", "--output-format", "json"]
        assert "--disallowed-tools" in command
        for tool in ("Write", "Edit", "Bash"):
            assert tool in command
        assert command[command.index("--system-prompt") + 1] == "Be terse"
        assert command[-2:] == ["--model", "opus"]

    def test_parses_result_and_usage(self, hooks):
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(claude_payload())})

        result = provider.invoke("q")

        assert result.content == "Use a circuit breaker."
        assert result.status is ProviderStatus.SUCCESS
        assert result.model_used == "claude:claude-sonnet-4"
        assert result.tokens.input_tokens == 12
        assert result.tokens.output_tokens == 5
        assert result.tokens.cached_input_tokens == 3
        assert result.tokens.total_tokens == 17
        assert result.truncated is False

    def test_max_turns_marks_truncated(self, hooks):
        stdout = claude_payload(subtype="error_max_turns")
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})
        assert provider.invoke("q").truncated is True

    def test_is_error_raises(self, hooks):
        stdout = claude_payload(is_error=True, result="quota exhausted")
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})
        with pytest.raises(ProviderInvocationError, match="quota exhausted"):
            provider.invoke("q")

    def test_invalid_json_raises(self, hooks):
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner("not json")})
        with pytest.raises(ProviderInvocationError, match="invalid JSON"):
            provider.invoke("q")

    def test_empty_result_raises(self, hooks):
        provider = claude.create_provider(
            hooks=hooks, dependencies={"runner": make_mock_runner(claude_payload(result="   "))}
        )
        with pytest.raises(ProviderInvocationError, match="no content"):
            provider.invoke("q")

    def test_non_zero_exit_includes_stderr(self, hooks):
        runner = make_mock_runner(stderr="rate limited", returncode=2)
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": runner})
        with pytest.raises(ProviderInvocationError, match="exited with code 2: rate limited"):
            provider.invoke("q")

    def test_missing_binary_is_unavailable(self, hooks):
        runner = make_mock_runner(raises=FileNotFoundError("claude"))
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": runner})
        with pytest.raises(ProviderUnavailableError):
            provider.invoke("q")

    def test_timeout(self, hooks):
        runner = make_mock_runner(raises=subprocess.TimeoutExpired(cmd="claude", timeout=5))
        provider = claude.create_provider(hooks=hooks, dependencies={"runner": runner})
        with pytest.raises(ProviderTimeoutError, match="timed out after 5 seconds"):
            provider.invoke("q")

    def test_context_is_prepended(self, hooks):
        calls = []
        provider = claude.create_provider(
            hooks=hooks, dependencies={"runner": make_mock_runner(claude_payload(), calls=calls)}
        )
        provider.invoke("follow up", context="Conversation so far:\n[user] hi")
        assert calls[0][2] == "Conversation so far:\n[user] hi\n\nfollow up"


# =============================================================================
# CodexProvider Tests
# =============================================================================


class TestCodexProvider:
    """Tests for CodexProvider implementation."""

    def test_command_uses_read_only_sandbox(self, hooks):
        calls = []
        stdout = codex_stream({"type": "item.completed", "item": {"type": "agent_message", "text": "ok"}})
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout, calls=calls)})

        provider.generate(ProviderRequest(prompt="Explain", system_prompt="Be brief"))

        command = calls[0]
        assert command[:6] == ["codex", "exec", "--sandbox", "read-only", "--skip-git-repo-check", "--json"]
        assert command[command.index("-m") + 1] == "gpt-5-codex"
        assert command[-1] == "Be brief\n\nExplain"

    def test_last_agent_message_wins(self, hooks):
        stdout = codex_stream(
            {"type": "thread.started", "thread_id": "t1"},
            {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
            {"type": "item.completed", "item": {"type": "agent_message", "text": "draft"}},
            {"type": "item.completed", "item": {"type": "agent_message", "text": "final answer"}},
            {"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 4, "cached_input_tokens": 2}},
        )
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})

        result = provider.invoke("q")

        assert result.content == "final answer"
        assert result.tokens.input_tokens == 10
        assert result.tokens.cached_input_tokens == 2
        assert result.tokens.total_tokens == 14
        assert len(result.raw_payload["events"]) == 5

    def test_non_json_lines_are_skipped(self, hooks):
        stdout = "warming up\n" + codex_stream(
            {"type": "item.completed", "item": {"type": "agent_message", "content": [{"text": "a"}, {"text": "b"}]}}
        )
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})
        assert provider.invoke("q").content == "ab"

    def test_error_event_raises(self, hooks):
        stdout = codex_stream({"type": "turn.failed", "error": {"message": "model overloaded"}})
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})
        with pytest.raises(ProviderInvocationError, match="model overloaded"):
            provider.invoke("q")

    def test_no_json_events_raises(self, hooks):
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner("plain text\n")})
        with pytest.raises(ProviderInvocationError, match="no JSON events"):
            provider.invoke("q")

    def test_empty_output_raises(self, hooks):
        provider = codex.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner("")})
        with pytest.raises(ProviderInvocationError, match="empty output"):
            provider.invoke("q")

    def test_model_override_from_options(self, hooks):
        calls = []
        stdout = codex_stream({"type": "item.completed", "item": {"type": "agent_message", "text": "ok"}})
        provider = codex.create_provider(
            hooks=hooks,
            overrides={"model": "gpt-5"},
            dependencies={"runner": make_mock_runner(stdout, calls=calls)},
        )
        result = provider.invoke("q")
        assert calls[0][calls[0].index("-m") + 1] == "gpt-5"
        assert result.model_used == "codex:gpt-5"


# =============================================================================
# GeminiProvider Tests
# =============================================================================


class TestGeminiProvider:
    """Tests for GeminiProvider implementation."""

    def test_command_structure(self, hooks):
        calls = []
        stdout = json.dumps({"response": "ok"})
        provider = gemini.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout, calls=calls)})

        provider.invoke("Summarize")

        assert calls[0] == ["gemini", "--output-format", "json", "-m", "gemini-2.5-pro", "-p", "Summarize"]

    def test_parses_response_and_stats(self, hooks):
        stdout = json.dumps(
            {
                "response": "  Cache for five minutes.  ",
                "stats": {
                    "models": {
                        "gemini-2.5-flash": {"tokens": {"prompt": 30, "candidates": 8, "cached": 4, "total": 42}}
                    }
                },
            }
        )
        provider = gemini.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})

        result = provider.invoke("q")

        assert result.content == "Cache for five minutes."
        assert result.model_used == "gemini:gemini-2.5-flash"
        assert result.tokens.input_tokens == 30
        assert result.tokens.output_tokens == 8
        assert result.tokens.cached_input_tokens == 4
        assert result.tokens.effective_total == 42

    def test_error_field_raises(self, hooks):
        stdout = json.dumps({"error": {"message": "API key invalid"}})
        provider = gemini.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner(stdout)})
        with pytest.raises(ProviderInvocationError, match="API key invalid"):
            provider.invoke("q")

    def test_non_object_payload_raises(self, hooks):
        provider = gemini.create_provider(hooks=hooks, dependencies={"runner": make_mock_runner("[1, 2]")})
        with pytest.raises(ProviderInvocationError, match="non-object"):
            provider.invoke("q")

    def test_request_timeout_passed_to_runner(self, hooks):
        seen = {}

        def runner(command, *, timeout=None, env=None, input_data=None):
            seen["timeout"] = timeout
            return subprocess.CompletedProcess(args=list(command), returncode=0, stdout='{"response": "x"}', stderr="")

        provider = gemini.create_provider(hooks=hooks, overrides={"timeout": 30}, dependencies={"runner": runner})
        provider.invoke("q")
        assert seen["timeout"] == 30.0

        provider.invoke("q", timeout=4.5)
        assert seen["timeout"] == 4.5

        provider.invoke("q", timeout=0.0)
        assert seen["timeout"] == 0.0


# =============================================================================
# Availability Tests
# =============================================================================


class TestAvailability:
    @pytest.mark.parametrize(
        "module,env",
        [
            (claude, "WALLBOUNCE_CLAUDE_AVAILABLE_OVERRIDE"),
            (codex, "WALLBOUNCE_CODEX_AVAILABLE_OVERRIDE"),
            (gemini, "WALLBOUNCE_GEMINI_AVAILABLE_OVERRIDE"),
        ],
    )
    def test_override_env(self, module, env, monkeypatch):
        check = getattr(module, f"is_{module.__name__.rsplit('.', 1)[-1]}_available")
        monkeypatch.setenv(env, "0")
        assert check() is False
        monkeypatch.setenv(env, "yes")
        assert check() is True

    def test_detect_binary_falls_back_to_path(self, monkeypatch):
        monkeypatch.setattr("shutil.which", lambda binary: "/usr/bin/" + binary)
        monkeypatch.setenv("SOME_OVERRIDE", "maybe")
        assert detect_binary("claude", override_env="SOME_OVERRIDE") is True


# =============================================================================
# SdkProvider Tests
# =============================================================================


class TestSdkProvider:
    """Tests for SdkProvider implementation."""

    def test_string_reply(self, hooks):
        provider = sdk.create_provider(
            provider_id="internal", hooks=hooks, model="m1", dependencies={"client": lambda request: " hello "}
        )
        result = provider.invoke("q")
        assert result.content == "hello"
        assert result.model_used == "internal:m1"

    def test_mapping_reply(self, hooks):
        def client(request):
            return {
                "content": "answer",
                "model": "m2",
                "usage": {"input_tokens": 7, "output_tokens": 3},
                "truncated": True,
            }

        result = sdk.create_provider(hooks=hooks, dependencies={"client": client}).invoke("q")

        assert result.model_used == "sdk:m2"
        assert result.tokens.total_tokens == 10
        assert result.truncated is True

    def test_request_receives_model_and_timeout(self, hooks):
        seen = []

        def client(request):
            seen.append(request)
            return "ok"

        provider = sdk.create_provider(
            hooks=hooks, model="m1", overrides={"timeout": 12}, dependencies={"client": client}
        )
        provider.invoke("q")
        assert seen[0].model == "m1"
        assert seen[0].timeout == 12.0

    def test_timeout_error_maps_to_provider_timeout(self, hooks):
        def client(request):
            raise TimeoutError("deadline")

        provider = sdk.create_provider(hooks=hooks, dependencies={"client": client})
        with pytest.raises(ProviderTimeoutError, match="deadline"):
            provider.invoke("q")

    def test_unsupported_reply_type(self, hooks):
        provider = sdk.create_provider(hooks=hooks, dependencies={"client": lambda request: 42})
        with pytest.raises(ProviderInvocationError, match="unsupported type int"):
            provider.invoke("q")

    def test_client_errors_are_normalized(self, hooks):
        def client(request):
            raise RuntimeError("connection reset")

        provider = sdk.create_provider(hooks=hooks, dependencies={"client": client})
        with pytest.raises(ProviderInvocationError, match="RuntimeError: connection reset"):
            provider.invoke("q")

    def test_missing_client(self, hooks):
        with pytest.raises(ProviderUnavailableError, match="No SDK client"):
            sdk.create_provider(hooks=hooks).invoke("q")
