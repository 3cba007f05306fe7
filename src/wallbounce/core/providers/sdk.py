"""
In-process SDK provider.

Wraps a client callable supplied through registry dependencies. Used for
backends whose trust class is ``internal_sdk_only``: they must be reached via
the in-process client and nothing else.

The callable receives the ProviderRequest and returns either a string or a
mapping with ``content`` and optional ``model``, ``usage`` and ``truncated``
keys. Exceptions it raises are normalized by ProviderContext.generate; a
``TimeoutError`` becomes ProviderTimeoutError.

Example:
    >>> def client(request):
    ...     reply = sdk.messages.create(model="m", messages=[...], timeout=request.timeout)
    ...     return {"content": reply.text, "usage": {"input_tokens": 12, "output_tokens": 40}}
    >>> registry = ProviderRegistry.from_config(config, dependencies={"internal": {"client": client}})
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional, Union

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

SdkClient = Callable[[ProviderRequest], Union[str, Mapping[str, Any]]]


class SdkProvider(ProviderContext):
    """ProviderContext that delegates to an injected SDK client callable."""

    invocation_kind = InvocationKind.SDK

    def __init__(
        self,
        metadata: ProviderMetadata,
        hooks: Optional[ProviderHooks] = None,
        *,
        client: Optional[SdkClient] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(metadata, hooks)
        self._client = client
        self._model = model or metadata.default_model
        self._timeout = float(timeout) if timeout else None

    def _execute(self, request: ProviderRequest) -> ProviderResult:
        if self._client is None:
            raise ProviderUnavailableError(
                "No SDK client was injected for this provider", provider=self.provider_id
            )
        if request.model is None and self._model:
            request = replace(request, model=self._model)
        if request.timeout is None and self._timeout:
            request = replace(request, timeout=self._timeout)
        try:
            reply = self._client(request)
        except TimeoutError as exc:
            raise ProviderTimeoutError(str(exc) or "SDK call timed out", provider=self.provider_id) from exc

        if isinstance(reply, str):
            return ProviderResult(
                content=reply.strip(),
                provider_id=self.provider_id,
                model_used=f"{self.provider_id}:{request.model or 'default'}",
                status=ProviderStatus.SUCCESS,
            )
        if not isinstance(reply, Mapping):
            raise ProviderInvocationError(
                f"SDK client returned unsupported type {type(reply).__name__}", provider=self.provider_id
            )

        usage = reply.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return ProviderResult(
            content=str(reply.get("content") or "").strip(),
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:{reply.get('model') or request.model or 'default'}",
            status=ProviderStatus.SUCCESS,
            tokens=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=int(usage.get("total_tokens") or 0) or input_tokens + output_tokens,
            ),
            truncated=bool(reply.get("truncated", False)),
        )


def create_provider(
    *,
    provider_id: str = "sdk",
    hooks: ProviderHooks,
    model: Optional[str] = None,
    dependencies: Optional[Dict[str, object]] = None,
    overrides: Optional[Dict[str, object]] = None,
) -> SdkProvider:
    """Factory used by the provider registry. Dependencies: ``client``."""
    dependencies = dependencies or {}
    overrides = overrides or {}
    return SdkProvider(
        metadata=ProviderMetadata(provider_id=provider_id, display_name="In-process SDK"),
        hooks=hooks,
        client=dependencies.get("client"),  # type: ignore[arg-type]
        model=model,
        timeout=overrides.get("timeout"),  # type: ignore[arg-type]
    )


__all__ = ["SdkClient", "SdkProvider", "create_provider"]
