"""
Provider registry.

Two layers:

* A module-level adapter catalog mapping adapter names ("claude-cli",
  "openai-http", ...) to factories. Built-in adapters register lazily so their
  modules are imported only when a configured provider uses them.
* ``ProviderRegistry``: a constructor-injected object holding the configured
  providers, their descriptors, one circuit breaker per provider and one
  concurrency slot pool per provider. It is built once from configuration and
  shared by every request an orchestrator serves.

Example:
    >>> registry = ProviderRegistry.from_config(config)
    >>> [d.provider_id for d in registry.resolve("premium")]
    ['codex', 'claude']
    >>> registry.record_outcome("codex", success=False)
"""

from __future__ import annotations

import importlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Collection,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from wallbounce.core.errors import (
    CircuitOpenError,
    ProviderConfigurationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from wallbounce.core.providers.base import (
    CostClass,
    InvocationKind,
    ProviderContext,
    ProviderDescriptor,
    ProviderHooks,
    TrustClass,
)
from wallbounce.core.resilience import CircuitBreaker, CircuitState, TransitionCallback

if TYPE_CHECKING:
    from wallbounce.config import CircuitBreakerConfig, WallbounceConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Adapter catalog
# =============================================================================


class AdapterFactory(Protocol):
    """
    Callable that instantiates a ProviderContext for one configured provider.

    Example:
        def create_provider(
            *,
            provider_id: str,
            hooks: ProviderHooks,
            model: Optional[str] = None,
            dependencies: Optional[Dict[str, object]] = None,
            overrides: Optional[Dict[str, object]] = None,
        ) -> ProviderContext:
            return MyProvider(provider_id, hooks=hooks, model=model)
    """

    def __call__(
        self,
        *,
        provider_id: str,
        hooks: ProviderHooks,
        model: Optional[str] = None,
        dependencies: Optional[Dict[str, object]] = None,
        overrides: Optional[Dict[str, object]] = None,
    ) -> ProviderContext:
        ...


AvailabilityCheck = Callable[[], bool]
LazyFactoryLoader = Callable[[], AdapterFactory]


@dataclass
class AdapterRegistration:
    """
    Catalog record for one adapter type.

    Attributes:
        adapter: Adapter name referenced by ``[[providers]].adapter``
        invocation_kind: How instances of this adapter reach their backend
        factory: Eager factory
        lazy_loader: Returns the factory on first use (deferred import)
        availability_check: Optional probe (e.g. binary on PATH)
        description: Human-readable description for diagnostics
    """

    adapter: str
    invocation_kind: InvocationKind
    factory: Optional[AdapterFactory] = None
    lazy_loader: Optional[LazyFactoryLoader] = None
    availability_check: Optional[AvailabilityCheck] = None
    description: Optional[str] = None

    def load_factory(self) -> AdapterFactory:
        if self.factory is not None:
            return self.factory
        if self.lazy_loader is None:
            raise ProviderUnavailableError(
                f"Adapter '{self.adapter}' is missing a factory.", provider=self.adapter
            )
        self.factory = self.lazy_loader()
        self.lazy_loader = None
        return self.factory

    def is_available(self) -> bool:
        if self.availability_check is None:
            return True
        try:
            return bool(self.availability_check())
        except Exception as exc:
            logger.warning("Availability check for adapter '%s' failed: %s", self.adapter, exc)
            return False


_ADAPTERS: Dict[str, AdapterRegistration] = {}


def register_adapter(
    adapter: str,
    *,
    invocation_kind: InvocationKind,
    factory: Optional[AdapterFactory] = None,
    lazy_loader: Optional[LazyFactoryLoader] = None,
    availability_check: Optional[AvailabilityCheck] = None,
    description: Optional[str] = None,
    replace: bool = False,
) -> None:
    """
    Register an adapter factory in the catalog.

    Raises:
        ValueError: If the adapter is already registered and replace=False,
            or if neither factory nor lazy_loader is given
    """
    if adapter in _ADAPTERS and not replace:
        raise ValueError(f"Adapter '{adapter}' is already registered")
    if factory is None and lazy_loader is None:
        raise ValueError("Either 'factory' or 'lazy_loader' must be provided")
    _ADAPTERS[adapter] = AdapterRegistration(
        adapter=adapter,
        invocation_kind=invocation_kind,
        factory=factory,
        lazy_loader=lazy_loader,
        availability_check=availability_check,
        description=description,
    )
    logger.debug("Adapter '%s' registered (%s)", adapter, invocation_kind.value)


def register_lazy_adapter(
    adapter: str,
    module_path: str,
    *,
    invocation_kind: InvocationKind,
    factory_attr: str = "create_provider",
    availability_attr: Optional[str] = None,
    description: Optional[str] = None,
    replace: bool = False,
) -> None:
    """Register an adapter by module path without importing it upfront."""

    def _lazy_loader() -> AdapterFactory:
        module = importlib.import_module(module_path)
        factory_obj = getattr(module, factory_attr, None)
        if factory_obj is None:
            raise ProviderUnavailableError(
                f"Module '{module_path}' is missing '{factory_attr}'.", provider=adapter
            )
        return factory_obj

    availability_check: Optional[AvailabilityCheck] = None
    if availability_attr:

        def availability_check() -> bool:
            module = importlib.import_module(module_path)
            return bool(getattr(module, availability_attr)())

    register_adapter(
        adapter,
        invocation_kind=invocation_kind,
        lazy_loader=_lazy_loader,
        availability_check=availability_check,
        description=description,
        replace=replace,
    )


def get_adapter_registration(adapter: str) -> AdapterRegistration:
    try:
        return _ADAPTERS[adapter]
    except KeyError:
        known = ", ".join(sorted(_ADAPTERS)) or "none"
        raise ProviderConfigurationError(f"Unknown adapter '{adapter}' (known: {known})") from None


def available_adapters(*, include_unavailable: bool = True) -> List[str]:
    names = sorted(_ADAPTERS)
    if include_unavailable:
        return names
    return [name for name in names if _ADAPTERS[name].is_available()]


def unregister_adapter(adapter: str) -> None:
    _ADAPTERS.pop(adapter, None)


def _register_builtin_adapters() -> None:
    register_lazy_adapter(
        "claude-cli",
        "wallbounce.core.providers.claude",
        invocation_kind=InvocationKind.SUBPROCESS,
        availability_attr="is_claude_available",
        description="Anthropic Claude Code CLI",
        replace=True,
    )
    register_lazy_adapter(
        "codex-cli",
        "wallbounce.core.providers.codex",
        invocation_kind=InvocationKind.SUBPROCESS,
        availability_attr="is_codex_available",
        description="OpenAI Codex CLI",
        replace=True,
    )
    register_lazy_adapter(
        "gemini-cli",
        "wallbounce.core.providers.gemini",
        invocation_kind=InvocationKind.SUBPROCESS,
        availability_attr="is_gemini_available",
        description="Google Gemini CLI",
        replace=True,
    )
    register_lazy_adapter(
        "openai-http",
        "wallbounce.core.providers.http",
        invocation_kind=InvocationKind.HTTP,
        description="OpenAI-compatible chat completions over HTTP",
        replace=True,
    )
    register_lazy_adapter(
        "sdk",
        "wallbounce.core.providers.sdk",
        invocation_kind=InvocationKind.SDK,
        description="In-process SDK client callable",
        replace=True,
    )


_register_builtin_adapters()


# =============================================================================
# Provider registry
# =============================================================================


@dataclass
class RegisteredProvider:
    """Registry entry: descriptor, adapter instance and per-provider state."""

    descriptor: ProviderDescriptor
    adapter: ProviderContext
    breaker: CircuitBreaker
    slots: threading.BoundedSemaphore = field(repr=False)


class ProviderRegistry:
    """
    Configured providers plus their circuit breakers and concurrency slots.

    The mapping of providers is fixed at construction; only breaker state and
    slot counts change afterwards, each guarded by its own per-provider lock.
    """

    def __init__(
        self,
        providers: Sequence[Tuple[ProviderDescriptor, ProviderContext]],
        *,
        breaker_config: Optional["CircuitBreakerConfig"] = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionCallback] = None,
    ):
        failure_threshold = breaker_config.failure_threshold if breaker_config else 5
        window_seconds = breaker_config.window_seconds if breaker_config else 60.0
        cooldown_seconds = breaker_config.cooldown_seconds if breaker_config else 30.0

        entries: Dict[str, RegisteredProvider] = {}
        for descriptor, adapter in providers:
            if descriptor.provider_id in entries:
                raise ProviderConfigurationError(f"Duplicate provider id '{descriptor.provider_id}'")
            if adapter.invocation_kind is not descriptor.invocation_kind:
                raise ProviderConfigurationError(
                    f"Provider '{descriptor.provider_id}' declares {descriptor.invocation_kind.value} "
                    f"but its adapter invokes via {adapter.invocation_kind.value}"
                )
            entries[descriptor.provider_id] = RegisteredProvider(
                descriptor=descriptor,
                adapter=adapter,
                breaker=CircuitBreaker(
                    name=descriptor.provider_id,
                    failure_threshold=failure_threshold,
                    window_seconds=window_seconds,
                    cooldown_seconds=cooldown_seconds,
                    clock=clock,
                    on_transition=on_transition,
                ),
                slots=threading.BoundedSemaphore(descriptor.max_concurrency),
            )
        self._entries: Mapping[str, RegisteredProvider] = entries

    @classmethod
    def from_config(
        cls,
        config: "WallbounceConfig",
        *,
        hooks: Optional[ProviderHooks] = None,
        dependencies: Optional[Mapping[str, Dict[str, object]]] = None,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionCallback] = None,
    ) -> "ProviderRegistry":
        """
        Build descriptors and adapters from ``config.providers``.

        Args:
            config: Loaded configuration
            hooks: Lifecycle hooks passed to every adapter
            dependencies: Per-provider injected collaborators (runner, client, transport)
            clock: Monotonic clock for the circuit breakers
            on_transition: Circuit transition callback (metrics)

        Raises:
            ProviderConfigurationError: Unknown adapter, bad enum value or a
                trust class that forbids the adapter's invocation kind
        """
        hooks = hooks or ProviderHooks()
        dependencies = dependencies or {}
        built: List[Tuple[ProviderDescriptor, ProviderContext]] = []

        for entry in config.providers:
            registration = get_adapter_registration(entry.adapter)
            try:
                trust_class = TrustClass(entry.trust_class)
                cost_class = CostClass(entry.cost_class)
            except ValueError as exc:
                raise ProviderConfigurationError(f"Provider '{entry.id}': {exc}") from exc

            descriptor = ProviderDescriptor(
                provider_id=entry.id,
                adapter=entry.adapter,
                invocation_kind=registration.invocation_kind,
                trust_class=trust_class,
                trust_weight=entry.trust_weight,
                cost_class=cost_class,
                max_concurrency=entry.max_concurrency,
                priority=entry.priority,
                tiers=frozenset(entry.tiers),
                fallback=entry.fallback,
                model=entry.model,
                timeout=entry.timeout,
            )
            overrides: Dict[str, object] = dict(entry.options)
            if entry.timeout is not None:
                overrides.setdefault("timeout", entry.timeout)
            adapter = registration.load_factory()(
                provider_id=entry.id,
                hooks=hooks,
                model=entry.model,
                dependencies=dict(dependencies.get(entry.id, {})),
                overrides=overrides,
            )
            built.append((descriptor, adapter))

        return cls(
            built,
            breaker_config=config.circuit_breaker,
            clock=clock,
            on_transition=on_transition,
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _entry(self, provider_id: str) -> RegisteredProvider:
        try:
            return self._entries[provider_id]
        except KeyError:
            raise ProviderConfigurationError(f"Unknown provider '{provider_id}'") from None

    def descriptor(self, provider_id: str) -> ProviderDescriptor:
        return self._entry(provider_id).descriptor

    def adapter(self, provider_id: str) -> ProviderContext:
        return self._entry(provider_id).adapter

    def breaker(self, provider_id: str) -> CircuitBreaker:
        return self._entry(provider_id).breaker

    def descriptors(self) -> List[ProviderDescriptor]:
        """All descriptors in priority order."""
        return sorted(
            (entry.descriptor for entry in self._entries.values()),
            key=lambda d: (d.priority, d.provider_id),
        )

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(
        self,
        tier: str,
        *,
        invocation_paths: Optional[Collection[InvocationKind]] = None,
        allow_list: Optional[Sequence[str]] = None,
        include_fallback: bool = False,
        exclude: Collection[str] = (),
    ) -> List[ProviderDescriptor]:
        """
        Ordered candidates for a tier.

        Args:
            tier: Tier name
            invocation_paths: Invocation kinds the caller permits (None = all)
            allow_list: Explicit provider ids; replaces tier membership
            include_fallback: Also return providers flagged ``fallback``
            exclude: Provider ids already attempted in this request

        Returns:
            Descriptors whose invocation path is permitted and whose circuit
            is not open, sorted by priority.

        Raises:
            ProviderConfigurationError: If the allow-list names an unknown provider
        """
        if allow_list is not None:
            for provider_id in allow_list:
                self._entry(provider_id)
            allowed = set(allow_list)
        else:
            allowed = None

        candidates: List[ProviderDescriptor] = []
        for descriptor in self.descriptors():
            provider_id = descriptor.provider_id
            if provider_id in exclude:
                continue
            if allowed is not None:
                if provider_id not in allowed:
                    continue
            elif not descriptor.serves(tier) and not (include_fallback and descriptor.fallback):
                continue
            elif descriptor.fallback and not include_fallback:
                continue

            if invocation_paths is not None and descriptor.invocation_kind not in invocation_paths:
                logger.debug(
                    "Skipping provider %s: %s invocation not permitted for this request",
                    provider_id,
                    descriptor.invocation_kind.value,
                )
                continue

            if self._entries[provider_id].breaker.state is CircuitState.OPEN:
                logger.debug("Skipping provider %s: circuit open", provider_id)
                continue

            candidates.append(descriptor)
        return candidates

    # -------------------------------------------------------------------------
    # Invocation guards
    # -------------------------------------------------------------------------

    def acquire(self, provider_id: str) -> None:
        """Claim breaker permission for one invocation.

        Raises:
            CircuitOpenError: The breaker is open, or half-open with its single
                trial already in flight
        """
        breaker = self._entry(provider_id).breaker
        if not breaker.allow_request():
            raise CircuitOpenError(
                provider=provider_id,
                state=breaker.state.value,
                retry_after=breaker.retry_after(),
            )

    @contextmanager
    def slot(self, provider_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold one of the provider's concurrency slots.

        Raises:
            ProviderTimeoutError: No slot freed up within ``timeout`` seconds
        """
        slots = self._entry(provider_id).slots
        acquired = slots.acquire(timeout=timeout) if timeout is not None else slots.acquire()
        if not acquired:
            raise ProviderTimeoutError(
                f"No free concurrency slot within {timeout:.2f}s", provider=provider_id
            )
        try:
            yield
        finally:
            slots.release()

    def record_outcome(self, provider_id: str, success: bool) -> None:
        """Feed an invocation outcome back into the provider's breaker."""
        breaker = self._entry(provider_id).breaker
        if success:
            breaker.record_success()
        else:
            breaker.record_failure()

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def describe(self) -> List[Dict[str, Any]]:
        rows = []
        for descriptor in self.descriptors():
            row = descriptor.to_dict()
            row["circuit"] = self._entries[descriptor.provider_id].breaker.get_status()
            registration = _ADAPTERS.get(descriptor.adapter)
            row["available"] = registration.is_available() if registration else False
            rows.append(row)
        return rows


__all__ = [
    "AdapterFactory",
    "AdapterRegistration",
    "ProviderRegistry",
    "RegisteredProvider",
    "available_adapters",
    "get_adapter_registration",
    "register_adapter",
    "register_lazy_adapter",
    "unregister_adapter",
]
