"""
Codex CLI provider.

OpenAI models are reached only through ``codex exec``, which streams JSONL
events on stdout. The last ``agent_message`` item is the answer; usage comes
from the ``turn.completed`` event.

Example event stream:
    {"type":"thread.started","thread_id":"..."}
    {"type":"item.completed","item":{"type":"reasoning","text":"..."}}
    {"type":"item.completed","item":{"type":"agent_message","text":"Answer"}}
    {"type":"turn.completed","usage":{"input_tokens":10,"output_tokens":5}}
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Dict, List, Optional, Tuple

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

DEFAULT_BINARY = "codex"
CUSTOM_BINARY_ENV = "CODEX_CLI_BINARY"
AVAILABILITY_OVERRIDE_ENV = "WALLBOUNCE_CODEX_AVAILABLE_OVERRIDE"

CODEX_METADATA = ProviderMetadata(
    provider_id="codex",
    display_name="OpenAI Codex CLI",
    models=("gpt-5-codex", "gpt-5"),
    default_model="gpt-5-codex",
    extra={"cli": "codex", "output_format": "jsonl"},
)


class CodexProvider(SubprocessProvider):
    """ProviderContext backed by ``codex exec --json`` in a read-only sandbox."""

    cli_name = "Codex CLI"
    default_binary = DEFAULT_BINARY
    binary_env = CUSTOM_BINARY_ENV

    def _build_command(self, model: Optional[str], request: ProviderRequest) -> List[str]:
        command = [self._binary, "exec", "--sandbox", "read-only", "--skip-git-repo-check", "--json"]
        if model:
            command.extend(["-m", model])
        command.append(self._compose_prompt(request))
        return command

    def _flatten_text(self, payload: Any) -> str:
        if isinstance(payload, str):
            return payload
        if isinstance(payload, dict):
            for key in ("text", "content", "value"):
                value = payload.get(key)
                if value:
                    return self._flatten_text(value)
            return ""
        if isinstance(payload, list):
            return "".join(self._flatten_text(item) for item in payload)
        return ""

    def _token_usage(self, usage: Dict[str, Any]) -> TokenUsage:
        input_tokens = int(usage.get("input_tokens") or usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or usage.get("completion_tokens") or 0)
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=int(usage.get("cached_input_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0) or input_tokens + output_tokens,
        )

    def _process_events(self, stdout: str) -> Tuple[str, TokenUsage, List[Dict[str, Any]]]:
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise ProviderInvocationError("Codex CLI returned empty output.", provider=self.provider_id)

        events: List[Dict[str, Any]] = []
        final_text = ""
        usage = TokenUsage()
        for line in lines:
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Codex CLI non-JSON line skipped: %s", line[:120])
                continue
            if not isinstance(event, dict):
                continue
            events.append(event)

            event_type = event.get("type")
            if event_type in ("error", "turn.failed"):
                error = event.get("error") or event
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ProviderInvocationError(f"Codex CLI reported an error: {message}", provider=self.provider_id)

            item = event.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message":
                text = self._flatten_text(item)
                if text:
                    final_text = text
            if event_type == "turn.completed" and isinstance(event.get("usage"), dict):
                usage = self._token_usage(event["usage"])

        if not events:
            raise ProviderInvocationError("Codex CLI produced no JSON events.", provider=self.provider_id)
        return final_text.strip(), usage, events

    def _parse_completed(
        self, completed: subprocess.CompletedProcess[str], model: Optional[str]
    ) -> ProviderResult:
        content, usage, events = self._process_events(completed.stdout)
        return ProviderResult(
            content=content,
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:{model or 'default'}",
            status=ProviderStatus.SUCCESS,
            tokens=usage,
            stderr=(completed.stderr or "").strip() or None,
            raw_payload={"events": events},
        )


def is_codex_available() -> bool:
    return detect_binary(DEFAULT_BINARY, override_env=AVAILABILITY_OVERRIDE_ENV)


def create_provider(
    *,
    provider_id: str = "codex",
    hooks: ProviderHooks,
    model: Optional[str] = None,
    dependencies: Optional[Dict[str, object]] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> CodexProvider:
    """Factory used by the provider registry."""
    dependencies = dependencies or {}
    overrides = overrides or {}
    runner: Optional[RunnerProtocol] = dependencies.get("runner")  # type: ignore[assignment]
    return CodexProvider(
        metadata=ProviderMetadata(
            provider_id=provider_id,
            display_name=CODEX_METADATA.display_name,
            models=CODEX_METADATA.models,
            default_model=CODEX_METADATA.default_model,
            extra=dict(CODEX_METADATA.extra),
        ),
        hooks=hooks,
        model=str(overrides.get("model") or model or "") or None,
        binary=overrides.get("binary") or dependencies.get("binary"),  # type: ignore[arg-type]
        runner=runner,
        env=dependencies.get("env"),  # type: ignore[arg-type]
        timeout=overrides.get("timeout"),  # type: ignore[arg-type]
    )


__all__ = ["CODEX_METADATA", "CodexProvider", "create_provider", "is_codex_available"]
