"""
Gemini CLI provider.

Runs ``gemini -m <model> --output-format json -p <prompt>`` and reads the
``response`` field plus per-model token stats from the JSON payload.
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

DEFAULT_BINARY = "gemini"
CUSTOM_BINARY_ENV = "GEMINI_CLI_BINARY"
AVAILABILITY_OVERRIDE_ENV = "WALLBOUNCE_GEMINI_AVAILABLE_OVERRIDE"

GEMINI_METADATA = ProviderMetadata(
    provider_id="gemini",
    display_name="Google Gemini CLI",
    models=("gemini-2.5-pro", "gemini-2.5-flash"),
    default_model="gemini-2.5-pro",
    extra={"cli": "gemini", "output_format": "json"},
)


class GeminiProvider(SubprocessProvider):
    """ProviderContext backed by the Gemini CLI."""

    cli_name = "Gemini CLI"
    default_binary = DEFAULT_BINARY
    binary_env = CUSTOM_BINARY_ENV

    def _build_command(self, model: Optional[str], request: ProviderRequest) -> List[str]:
        command = [self._binary, "--output-format", "json"]
        if model:
            command.extend(["-m", model])
        command.extend(["-p", self._compose_prompt(request)])
        return command

    def _extract_usage(self, payload: Dict[str, Any]) -> TokenUsage:
        stats = payload.get("stats") or {}
        models_section = stats.get("models") or {}
        first_model = next(iter(models_section.values()), {})
        tokens = first_model.get("tokens") or {}
        return TokenUsage(
            input_tokens=int(tokens.get("prompt") or tokens.get("input") or 0),
            output_tokens=int(tokens.get("candidates") or tokens.get("output") or 0),
            cached_input_tokens=int(tokens.get("cached") or 0),
            total_tokens=int(tokens.get("total") or 0),
        )

    def _parse_completed(
        self, completed: subprocess.CompletedProcess[str], model: Optional[str]
    ) -> ProviderResult:
        payload = self._load_json(completed.stdout)
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderInvocationError(f"Gemini CLI reported an error: {message}", provider=self.provider_id)

        content = str(payload.get("response") or payload.get("content") or "").strip()
        reported_model = next(iter((payload.get("stats") or {}).get("models") or {}), None) or model

        return ProviderResult(
            content=content,
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:{reported_model or 'default'}",
            status=ProviderStatus.SUCCESS,
            tokens=self._extract_usage(payload),
            stderr=(completed.stderr or "").strip() or None,
            raw_payload=payload,
        )


def is_gemini_available() -> bool:
    return detect_binary(DEFAULT_BINARY, override_env=AVAILABILITY_OVERRIDE_ENV)


def create_provider(
    *,
    provider_id: str = "gemini",
    hooks: ProviderHooks,
    model: Optional[str] = None,
    dependencies: Optional[Dict[str, object]] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> GeminiProvider:
    """Factory used by the provider registry."""
    dependencies = dependencies or {}
    overrides = overrides or {}
    runner: Optional[RunnerProtocol] = dependencies.get("runner")  # type: ignore[assignment]
    return GeminiProvider(
        metadata=ProviderMetadata(
            provider_id=provider_id,
            display_name=GEMINI_METADATA.display_name,
            models=GEMINI_METADATA.models,
            default_model=GEMINI_METADATA.default_model,
            extra=dict(GEMINI_METADATA.extra),
        ),
        hooks=hooks,
        model=str(overrides.get("model") or model or "") or None,
        binary=overrides.get("binary") or dependencies.get("binary"),  # type: ignore[arg-type]
        runner=runner,
        env=dependencies.get("env"),  # type: ignore[arg-type]
        timeout=overrides.get("timeout"),  # type: ignore[arg-type]
    )


__all__ = ["GEMINI_METADATA", "GeminiProvider", "create_provider", "is_gemini_available"]
