"""
Integration test configuration.

Simulated-CLI tests always run. Tests marked ``live_providers`` call the real
CLIs and are skipped unless WALLBOUNCE_ENABLE_LIVE_PROVIDER_TESTS=1 and the
binary is on PATH.

Usage:
    pytest tests/integration/
    WALLBOUNCE_ENABLE_LIVE_PROVIDER_TESTS=1 pytest tests/integration/ -m live_providers
"""

import json
import os
import subprocess
from typing import Dict, List, Optional, Sequence

import pytest

from wallbounce.core.providers.registry import get_adapter_registration

LIVE_ENV = "WALLBOUNCE_ENABLE_LIVE_PROVIDER_TESTS"
PROVIDER_ADAPTERS = {"gemini": "gemini-cli", "codex": "codex-cli", "claude": "claude-cli"}


# =============================================================================
# Marker Registration
# =============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "live_providers: tests that invoke real AI provider CLIs")
    for provider in PROVIDER_ADAPTERS:
        config.addinivalue_line("markers", f"{provider}: tests requiring the {provider} CLI")


def pytest_collection_modifyitems(config, items):
    live_enabled = os.environ.get(LIVE_ENV) == "1"
    for item in items:
        markers = {m.name for m in item.iter_markers()}
        if "live_providers" in markers and not live_enabled:
            item.add_marker(pytest.mark.skip(reason=f"set {LIVE_ENV}=1 to run live provider tests"))
            continue
        for provider, adapter in PROVIDER_ADAPTERS.items():
            if provider in markers and not get_adapter_registration(adapter).is_available():
                item.add_marker(pytest.mark.skip(reason=f"Provider '{provider}' not available"))


# =============================================================================
# Simulated CLIs
# =============================================================================


class SimulatedCli:
    """
    Runner standing in for one CLI binary.

    Produces the JSON shape the real CLI prints and records every argv.
    """

    def __init__(self, kind: str, answer: str, *, returncode: int = 0):
        self.kind = kind
        self.answer = answer
        self.returncode = returncode
        self.commands: List[List[str]] = []

    def _stdout(self) -> str:
        if self.kind == "gemini":
            return json.dumps(
                {
                    "response": self.answer,
                    "stats": {"models": {"gemini-2.5-pro": {"tokens": {"prompt": 40, "candidates": 20, "total": 60}}}},
                }
            )
        if self.kind == "codex":
            events = [
                {"type": "thread.started", "thread_id": "t-1"},
                {"type": "item.completed", "item": {"type": "agent_message", "text": self.answer}},
                {"type": "turn.completed", "usage": {"input_tokens": 40, "output_tokens": 20}},
            ]
            return "\n".join(json.dumps(event) for event in events)
        return json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "is_error": False,
                "result": self.answer,
                "usage": {"input_tokens": 40, "output_tokens": 20},
            }
        )

    def __call__(
        self,
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input_data: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        self.commands.append(list(command))
        if self.returncode:
            return subprocess.CompletedProcess(
                args=list(command), returncode=self.returncode, stdout="", stderr=f"{self.kind} crashed"
            )
        return subprocess.CompletedProcess(args=list(command), returncode=0, stdout=self._stdout(), stderr="")


@pytest.fixture
def simulated_clis():
    """One simulated CLI per default provider, answering near-identically."""
    base = "cache responses for five minutes and retry failed calls with exponential backoff"
    return {
        "gemini": SimulatedCli("gemini", base),
        "codex": SimulatedCli("codex", base + " first"),
        "claude": SimulatedCli("claude", base + " always"),
    }


@pytest.fixture
def live_prompt() -> str:
    return "Reply with exactly: PONG"
