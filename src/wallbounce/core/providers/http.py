"""
OpenAI-compatible chat-completions provider over HTTP.

Targets any endpoint exposing ``POST {base_url}/chat/completions`` (hosted
APIs, local gateways, vLLM, Ollama's compatibility layer). The API key is
read from the environment variable named by ``api_key_env`` at call time.

Status mapping:
    401/403            -> ProviderUnavailableError (credentials)
    other 4xx / 5xx    -> ProviderInvocationError
    httpx timeout      -> ProviderTimeoutError
    connection errors  -> ProviderInvocationError

The adapter never retries; a failed call is one failed invocation.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

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
    ProviderStatus,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SECONDS = 120.0
CHAT_COMPLETIONS_PATH = "/chat/completions"


class OpenAICompatibleProvider(ProviderContext):
    """ProviderContext backed by an OpenAI-compatible HTTP endpoint."""

    invocation_kind = InvocationKind.HTTP

    def __init__(
        self,
        metadata: ProviderMetadata,
        hooks: Optional[ProviderHooks] = None,
        *,
        model: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        api_key_env: str = DEFAULT_API_KEY_ENV,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(metadata, hooks)
        self._model = model or metadata.default_model or DEFAULT_MODEL
        self._base_url = base_url.rstrip("/")
        self._api_key_env = api_key_env
        self._timeout = float(timeout) if timeout else DEFAULT_TIMEOUT_SECONDS
        self._transport = transport
        self._extra_headers = dict(extra_headers or {})

    def _api_key(self) -> str:
        api_key = os.environ.get(self._api_key_env, "").strip()
        if not api_key:
            raise ProviderUnavailableError(
                f"Environment variable {self._api_key_env} is not set",
                provider=self.provider_id,
            )
        return api_key

    def _build_payload(self, request: ProviderRequest) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.full_prompt()})

        payload: Dict[str, Any] = {"model": request.model or self._model, "messages": messages}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] if response.text else "Unknown error"
        error = data.get("error", data.get("message"))
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error or response.text[:200])

    def _post(self, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
            **self._extra_headers,
        }
        url = f"{self._base_url}{CHAT_COMPLETIONS_PATH}"
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                f"HTTP request timed out after {timeout} seconds", provider=self.provider_id
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderInvocationError(f"HTTP request failed: {exc}", provider=self.provider_id) from exc

        if response.status_code in (401, 403):
            raise ProviderUnavailableError(
                f"Authentication rejected ({response.status_code})", provider=self.provider_id
            )
        if response.status_code >= 400:
            raise ProviderInvocationError(
                f"API error {response.status_code}: {self._extract_error_message(response)}",
                provider=self.provider_id,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderInvocationError("API returned invalid JSON", provider=self.provider_id) from exc

    def _execute(self, request: ProviderRequest) -> ProviderResult:
        payload = self._build_payload(request)
        data = self._post(payload, timeout=self._timeout if request.timeout is None else request.timeout)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderInvocationError("API response contained no choices", provider=self.provider_id)
        choice = choices[0]
        message = choice.get("message") or {}
        content = str(message.get("content") or "").strip()
        if not content:
            raise ProviderInvocationError("API response contained no content", provider=self.provider_id)

        usage = data.get("usage") or {}
        return ProviderResult(
            content=content,
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:{data.get('model') or payload['model']}",
            status=ProviderStatus.SUCCESS,
            tokens=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
            truncated=choice.get("finish_reason") == "length",
            raw_payload={"id": data.get("id"), "finish_reason": choice.get("finish_reason")},
        )


def create_provider(
    *,
    provider_id: str = "openai-http",
    hooks: ProviderHooks,
    model: Optional[str] = None,
    dependencies: Optional[Dict[str, object]] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> OpenAICompatibleProvider:
    """
    Factory used by the provider registry.

    Overrides: ``base_url``, ``api_key_env``, ``timeout``, ``headers``.
    Dependencies: ``transport`` (an httpx transport, e.g. MockTransport in tests).
    """
    dependencies = dependencies or {}
    overrides = overrides or {}
    return OpenAICompatibleProvider(
        metadata=ProviderMetadata(
            provider_id=provider_id,
            display_name="OpenAI-compatible HTTP",
            default_model=DEFAULT_MODEL,
        ),
        hooks=hooks,
        model=model,
        base_url=str(overrides.get("base_url") or DEFAULT_BASE_URL),
        api_key_env=str(overrides.get("api_key_env") or DEFAULT_API_KEY_ENV),
        timeout=overrides.get("timeout"),  # type: ignore[arg-type]
        transport=dependencies.get("transport"),  # type: ignore[arg-type]
        extra_headers=overrides.get("headers"),  # type: ignore[arg-type]
    )


__all__ = ["OpenAICompatibleProvider", "create_provider"]
