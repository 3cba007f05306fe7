"""
Shared machinery for CLI-backed providers.

A SubprocessProvider builds an argv list, runs it through an injectable
runner (``subprocess.run`` by default), and maps process failures onto the
provider error taxonomy:

    FileNotFoundError        -> ProviderUnavailableError
    subprocess.TimeoutExpired -> ProviderTimeoutError
    non-zero exit / bad JSON -> ProviderInvocationError

``subprocess.run`` kills the child when its timeout expires, so an invocation
abandoned by the orchestrator still releases its process on its own.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence

from wallbounce.core.errors import (
    ProviderInvocationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from wallbounce.core.providers.base import (
    InvocationKind,
    ProviderContext,
    ProviderHooks,
    ProviderMetadata,
    ProviderRequest,
    ProviderResult,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 360.0
STDERR_TAIL_CHARS = 400


class RunnerProtocol(Protocol):
    """Callable signature used for executing CLI commands."""

    def __call__(
        self,
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input_data: Optional[str] = None,
    ) -> subprocess.CompletedProcess[str]:
        raise NotImplementedError


def default_runner(
    command: Sequence[str],
    *,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
) -> subprocess.CompletedProcess[str]:
    """Invoke a CLI via subprocess."""
    return subprocess.run(  # noqa: S603 - argv list, no shell
        list(command),
        capture_output=True,
        text=True,
        input=input_data,
        timeout=timeout,
        env=env,
        check=False,
    )


def _coerce_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


def detect_binary(binary: str, *, override_env: Optional[str] = None) -> bool:
    """
    Return True if ``binary`` resolves on PATH.

    An override variable set to a truthy/falsy value short-circuits the PATH
    lookup (useful on CI where the CLIs are not installed).
    """
    if override_env:
        override = _coerce_bool(os.environ.get(override_env))
        if override is not None:
            return override
    return shutil.which(binary) is not None


class SubprocessProvider(ProviderContext):
    """Base class for providers reached through a command-line tool."""

    invocation_kind = InvocationKind.SUBPROCESS
    cli_name = "cli"
    default_binary = ""
    binary_env: Optional[str] = None

    def __init__(
        self,
        metadata: ProviderMetadata,
        hooks: Optional[ProviderHooks] = None,
        *,
        model: Optional[str] = None,
        binary: Optional[str] = None,
        runner: Optional[RunnerProtocol] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(metadata, hooks)
        self._runner: RunnerProtocol = runner or default_runner
        env_binary = os.environ.get(self.binary_env) if self.binary_env else None
        self._binary = binary or env_binary or self.default_binary
        self._env = env
        self._timeout = float(timeout) if timeout else DEFAULT_TIMEOUT_SECONDS
        self._model = model or metadata.default_model

    @property
    def binary(self) -> str:
        return self._binary

    @property
    def model(self) -> Optional[str]:
        return self._model

    def _resolve_model(self, request: ProviderRequest) -> Optional[str]:
        return request.model or self._model

    def _compose_prompt(self, request: ProviderRequest) -> str:
        """Prompt text for CLIs without a separate system prompt flag."""
        prompt = request.full_prompt()
        if request.system_prompt:
            prompt = f"{request.system_prompt.strip()}\n\n{prompt}"
        return prompt

    def _run(
        self,
        command: Sequence[str],
        timeout: Optional[float],
        input_data: Optional[str] = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return self._runner(command, timeout=timeout, env=self._env, input_data=input_data)
        except FileNotFoundError as exc:
            raise ProviderUnavailableError(
                f"{self.cli_name} '{self._binary}' is not available on PATH.",
                provider=self.provider_id,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ProviderTimeoutError(
                f"Command timed out after {exc.timeout} seconds",
                provider=self.provider_id,
            ) from exc

    def _load_json(self, raw: str) -> Dict[str, Any]:
        text = raw.strip()
        if not text:
            raise ProviderInvocationError(f"{self.cli_name} returned empty output.", provider=self.provider_id)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.debug("%s JSON parse error: %s", self.cli_name, exc)
            raise ProviderInvocationError(
                f"{self.cli_name} returned invalid JSON response", provider=self.provider_id
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderInvocationError(
                f"{self.cli_name} returned a non-object JSON payload", provider=self.provider_id
            )
        return payload

    def _execute(self, request: ProviderRequest) -> ProviderResult:
        model = self._resolve_model(request)
        command = self._build_command(model, request)
        timeout = self._timeout if request.timeout is None else request.timeout
        logger.debug("Running %s for provider %s (timeout=%.1fs)", self.cli_name, self.provider_id, timeout)
        completed = self._run(command, timeout=timeout, input_data=self._stdin(request))

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            logger.debug("%s stderr: %s", self.cli_name, stderr or "no stderr")
            message = f"{self.cli_name} exited with code {completed.returncode}"
            if stderr:
                message = f"{message}: {stderr[-STDERR_TAIL_CHARS:]}"
            raise ProviderInvocationError(message, provider=self.provider_id)

        result = self._parse_completed(completed, model)
        if not result.content.strip():
            raise ProviderInvocationError(f"{self.cli_name} returned no content", provider=self.provider_id)
        return result

    def _stdin(self, request: ProviderRequest) -> Optional[str]:
        return None

    @abstractmethod
    def _build_command(self, model: Optional[str], request: ProviderRequest) -> List[str]:
        """Return the argv list for one invocation."""

    @abstractmethod
    def _parse_completed(
        self, completed: subprocess.CompletedProcess[str], model: Optional[str]
    ) -> ProviderResult:
        """Turn a successful process result into a ProviderResult."""


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "RunnerProtocol",
    "SubprocessProvider",
    "default_runner",
    "detect_binary",
]
