"""
Claude Code CLI provider.

Anthropic models are reached only through the ``claude`` CLI, never an HTTP
API, so configured providers using this adapter must carry the ``cli_only``
or ``open`` trust class. The CLI runs in print mode with write-capable tools
disabled.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Any, Dict, List, Optional

from wallbounce.core.errors import ProviderInvocationError
from wallbounce.core.providers.base import (
    ProviderHooks,
    ProviderMetadata,
    ProviderRequest,
    ProviderResult,
    ProviderStatus,
    TokenUsage,
)
from wallbounce.core.providers.process import RunnerProtocol, SubprocessProvider, detect_binary

logger = logging.getLogger(__name__)

DEFAULT_BINARY = "claude"
CUSTOM_BINARY_ENV = "CLAUDE_CLI_BINARY"
AVAILABILITY_OVERRIDE_ENV = "WALLBOUNCE_CLAUDE_AVAILABLE_OVERRIDE"

# Analysis only: nothing that edits files or reaches the network.
DISALLOWED_TOOLS = [
    "Write",
    "Edit",
    "NotebookEdit",
    "Bash",
    "WebSearch",
    "WebFetch",
]

CLAUDE_METADATA = ProviderMetadata(
    provider_id="claude",
    display_name="Anthropic Claude Code CLI",
    models=("sonnet", "opus", "haiku"),
    default_model="sonnet",
    extra={"cli": "claude", "output_format": "json"},
)


class ClaudeProvider(SubprocessProvider):
    """ProviderContext backed by ``claude --print``."""

    cli_name = "Claude CLI"
    default_binary = DEFAULT_BINARY
    binary_env = CUSTOM_BINARY_ENV

    def _build_command(self, model: Optional[str], request: ProviderRequest) -> List[str]:
        """
        Command structure:
            claude --print <prompt> --output-format json --disallowed-tools ... [--model m]
        """
        command = [self._binary, "--print", request.full_prompt(), "--output-format", "json"]
        command.extend(["--disallowed-tools", *DISALLOWED_TOOLS])
        if request.system_prompt:
            command.extend(["--system-prompt", request.system_prompt.strip()])
        if model:
            command.extend(["--model", model])
        return command

    def _extract_usage(self, payload: Dict[str, Any]) -> TokenUsage:
        usage = payload.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
            total_tokens=input_tokens + output_tokens,
        )

    def _parse_completed(
        self, completed: subprocess.CompletedProcess[str], model: Optional[str]
    ) -> ProviderResult:
        payload = self._load_json(completed.stdout)
        if payload.get("is_error"):
            raise ProviderInvocationError(
                f"Claude CLI reported an error: {payload.get('result') or payload.get('subtype')}",
                provider=self.provider_id,
            )

        content = str(payload.get("result") or payload.get("content") or "").strip()
        model_usage = payload.get("modelUsage") or {}
        reported_model = next(iter(model_usage), None) or model or "default"

        return ProviderResult(
            content=content,
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:{reported_model}",
            status=ProviderStatus.SUCCESS,
            tokens=self._extract_usage(payload),
            truncated=payload.get("subtype") == "error_max_turns",
            stderr=(completed.stderr or "").strip() or None,
            raw_payload=payload,
        )


def is_claude_available() -> bool:
    return detect_binary(DEFAULT_BINARY, override_env=AVAILABILITY_OVERRIDE_ENV)


def create_provider(
    *,
    provider_id: str = "claude",
    hooks: ProviderHooks,
    model: Optional[str] = None,
    dependencies: Optional[Dict[str, object]] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> ClaudeProvider:
    """
    Factory used by the provider registry.

    dependencies/overrides allow callers (or tests) to inject runner/env/binary.
    """
    dependencies = dependencies or {}
    overrides = overrides or {}
    runner: Optional[RunnerProtocol] = dependencies.get("runner")  # type: ignore[assignment]
    return ClaudeProvider(
        metadata=ProviderMetadata(
            provider_id=provider_id,
            display_name=CLAUDE_METADATA.display_name,
            models=CLAUDE_METADATA.models,
            default_model=CLAUDE_METADATA.default_model,
            extra=dict(CLAUDE_METADATA.extra),
        ),
        hooks=hooks,
        model=str(overrides.get("model") or model or "") or None,
        binary=overrides.get("binary") or dependencies.get("binary"),  # type: ignore[arg-type]
        runner=runner,
        env=dependencies.get("env"),  # type: ignore[arg-type]
        timeout=overrides.get("timeout"),  # type: ignore[arg-type]
    )


__all__ = ["CLAUDE_METADATA", "ClaudeProvider", "create_provider", "is_claude_available"]
