"""
Configuration for wallbounce.

Loaded once from a TOML file plus ``WALLBOUNCE_*`` environment overrides and
handed to constructors. Nothing in the core mutates it afterwards.

Priority (highest to lowest):
1. Environment variables
2. TOML config file
3. Default values

Example ``wallbounce.toml``:

    [tiers.premium]
    min_providers = 3
    max_providers = 3

    [cache]
    ttl_seconds = 300

    [[providers]]
    id = "gemini"
    adapter = "gemini-cli"
    tiers = ["basic"]
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from wallbounce.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAMES = ("wallbounce.toml", ".wallbounce.toml")
CONFIG_FILE_ENV = "WALLBOUNCE_CONFIG"

TIER_NAMES = ("basic", "premium", "critical")
SEQUENTIAL_DEPTH_RANGE = (3, 5)
DEFAULT_SEQUENTIAL_DEPTH = 3
EVICTION_POLICIES = ("reject", "evict_oldest")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def _optional_path(value: Any) -> Optional[Path]:
    if value in (None, ""):
        return None
    return Path(str(value)).expanduser()


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")


@dataclass
class TierConfig:
    """Provider counts and escalation policy for one task tier."""

    name: str
    min_providers: int
    max_providers: int
    escalate_to: Optional[str] = None
    allow_low_confidence: bool = True

    @classmethod
    def from_toml_dict(cls, name: str, data: Dict[str, Any]) -> "TierConfig":
        default = DEFAULT_TIERS.get(name)
        return cls(
            name=name,
            min_providers=int(data.get("min_providers", default.min_providers if default else 2)),
            max_providers=int(data.get("max_providers", default.max_providers if default else 2)),
            escalate_to=data.get("escalate_to", default.escalate_to if default else None) or None,
            allow_low_confidence=_parse_bool(
                data.get("allow_low_confidence", default.allow_low_confidence if default else True)
            ),
        )

    def validate(self) -> None:
        if self.min_providers < 1:
            raise ValueError(f"tiers.{self.name}.min_providers must be >= 1")
        if self.max_providers < self.min_providers:
            raise ValueError(
                f"tiers.{self.name}.max_providers ({self.max_providers}) is below "
                f"min_providers ({self.min_providers})"
            )


DEFAULT_TIERS: Dict[str, TierConfig] = {
    "basic": TierConfig("basic", 2, 2, escalate_to="premium"),
    "premium": TierConfig("premium", 3, 3, escalate_to="critical"),
    "critical": TierConfig("critical", 3, 4, escalate_to="critical"),
}


@dataclass
class ConsensusConfig:
    """Scoring thresholds for the consensus engine.

    Attributes:
        confidence_threshold: Final confidence below this triggers escalation
        agreement_threshold: Agreement below this triggers escalation
        outlier_floor: A response whose similarity to every other response is
            below this floor is excluded from integration
        prior_weight: Share of per-response confidence taken from the provider prior
        tie_epsilon: Confidence gap treated as a tie
        similarity: "jaccard" or "cosine"
    """

    confidence_threshold: float = 0.7
    agreement_threshold: float = 0.6
    outlier_floor: float = 0.2
    prior_weight: float = 0.3
    tie_epsilon: float = 0.01
    similarity: str = "jaccard"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "ConsensusConfig":
        return cls(
            confidence_threshold=float(data.get("confidence_threshold", 0.7)),
            agreement_threshold=float(data.get("agreement_threshold", 0.6)),
            outlier_floor=float(data.get("outlier_floor", 0.2)),
            prior_weight=float(data.get("prior_weight", 0.3)),
            tie_epsilon=float(data.get("tie_epsilon", 0.01)),
            similarity=str(data.get("similarity", "jaccard")).lower(),
        )

    def validate(self) -> None:
        for name in ("confidence_threshold", "agreement_threshold", "outlier_floor", "prior_weight"):
            _check_unit_interval(f"consensus.{name}", getattr(self, name))
        if self.similarity not in ("jaccard", "cosine"):
            raise ValueError(f"consensus.similarity must be 'jaccard' or 'cosine', got {self.similarity!r}")


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=int(data.get("failure_threshold", 5)),
            window_seconds=float(data.get("window_seconds", 60.0)),
            cooldown_seconds=float(data.get("cooldown_seconds", 30.0)),
        )


@dataclass
class CacheConfig:
    """Response cache settings.

    Attributes:
        enabled: Consult and populate the cache
        ttl_seconds: Entry lifetime
        backend: "memory" or "file"
        directory: Directory for the file backend
        sweep_interval: Seconds between background sweeps (0 = no sweeper)
    """

    enabled: bool = True
    ttl_seconds: float = 300.0
    backend: str = "memory"
    directory: Optional[Path] = None
    sweep_interval: float = 60.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        return cls(
            enabled=_parse_bool(data.get("enabled", True)),
            ttl_seconds=float(data.get("ttl_seconds", 300.0)),
            backend=str(data.get("backend", "memory")).lower(),
            directory=_optional_path(data.get("directory")),
            sweep_interval=float(data.get("sweep_interval", 60.0)),
        )

    def get_directory(self) -> Path:
        return self.directory or Path.home() / ".cache" / "wallbounce" / "responses"


@dataclass
class SessionConfig:
    """Session store settings.

    Attributes:
        enabled: Read/append session turns during execution
        backend: "memory", "file" or "redis"
        ttl_seconds: Sliding session lifetime
        max_sessions_per_owner: Active sessions allowed per owner
        eviction_policy: "reject" or "evict_oldest" when the limit is reached
        context_turns: Prior turns included as continuation context
        directory: Directory for the file backend
        redis_url: Connection URL for the redis backend
        key_prefix: Key namespace for the redis backend
    """

    enabled: bool = True
    backend: str = "memory"
    ttl_seconds: float = 86400.0
    max_sessions_per_owner: int = 10
    eviction_policy: str = "reject"
    context_turns: int = 5
    directory: Optional[Path] = None
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "wallbounce:session:"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        return cls(
            enabled=_parse_bool(data.get("enabled", True)),
            backend=str(data.get("backend", "memory")).lower(),
            ttl_seconds=float(data.get("ttl_seconds", 86400.0)),
            max_sessions_per_owner=int(data.get("max_sessions_per_owner", 10)),
            eviction_policy=str(data.get("eviction_policy", "reject")).lower(),
            context_turns=int(data.get("context_turns", 5)),
            directory=_optional_path(data.get("directory")),
            redis_url=str(data.get("redis_url", "redis://localhost:6379/0")),
            key_prefix=str(data.get("key_prefix", "wallbounce:session:")),
        )

    def validate(self) -> None:
        if self.eviction_policy not in EVICTION_POLICIES:
            raise ValueError(
                f"sessions.eviction_policy must be one of {EVICTION_POLICIES}, got {self.eviction_policy!r}"
            )
        if self.max_sessions_per_owner < 1:
            raise ValueError("sessions.max_sessions_per_owner must be >= 1")
        if self.backend not in ("memory", "file", "redis"):
            raise ValueError(f"sessions.backend must be memory, file or redis, got {self.backend!r}")

    def get_directory(self) -> Path:
        return self.directory or Path.home() / ".local" / "share" / "wallbounce" / "sessions"


@dataclass
class AggregationConfig:
    """Optional aggregator provider used as the integration surface."""

    enabled: bool = False
    default_provider: Optional[str] = None
    complex_provider: Optional[str] = None
    complexity_threshold: int = 6

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "AggregationConfig":
        return cls(
            enabled=_parse_bool(data.get("enabled", False)),
            default_provider=data.get("default_provider") or None,
            complex_provider=data.get("complex_provider") or None,
            complexity_threshold=int(data.get("complexity_threshold", 6)),
        )


@dataclass
class OrchestratorConfig:
    default_timeout: float = 120.0
    fan_out_cap: int = 8
    default_mode: str = "parallel"
    sequential_depth: int = DEFAULT_SEQUENTIAL_DEPTH
    fallback_on_shortfall: bool = False

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        return cls(
            default_timeout=float(data.get("default_timeout", 120.0)),
            fan_out_cap=int(data.get("fan_out_cap", 8)),
            default_mode=str(data.get("default_mode", "parallel")).lower(),
            sequential_depth=validate_depth(data.get("sequential_depth")),
            fallback_on_shortfall=_parse_bool(data.get("fallback_on_shortfall", False)),
        )


def validate_depth(depth: Any) -> int:
    """Clamp a sequential chain depth to 3-5, falling back to 3 when out of range."""
    if depth is None:
        return DEFAULT_SEQUENTIAL_DEPTH
    try:
        value = int(depth)
    except (TypeError, ValueError):
        logger.warning("Invalid sequential depth %r, using %d", depth, DEFAULT_SEQUENTIAL_DEPTH)
        return DEFAULT_SEQUENTIAL_DEPTH
    low, high = SEQUENTIAL_DEPTH_RANGE
    if value < low or value > high:
        logger.warning(
            "Sequential depth %d outside %d-%d, using %d", value, low, high, DEFAULT_SEQUENTIAL_DEPTH
        )
        return DEFAULT_SEQUENTIAL_DEPTH
    return value


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            format=str(data.get("format", "human")).lower(),
        )


@dataclass
class ObservabilityConfig:
    """Prometheus metrics settings.

    Attributes:
        prometheus_enabled: Export metrics through prometheus_client
        prometheus_namespace: Metric name prefix
        prometheus_port: HTTP port for /metrics (0 = no server)
        prometheus_host: HTTP server host
    """

    prometheus_enabled: bool = False
    prometheus_namespace: str = "wallbounce"
    prometheus_port: int = 0
    prometheus_host: str = "0.0.0.0"

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "ObservabilityConfig":
        return cls(
            prometheus_enabled=_parse_bool(data.get("prometheus_enabled", False)),
            prometheus_namespace=str(data.get("prometheus_namespace", "wallbounce")),
            prometheus_port=int(data.get("prometheus_port", 0)),
            prometheus_host=str(data.get("prometheus_host", "0.0.0.0")),
        )


@dataclass
class ProviderConfig:
    """One ``[[providers]]`` entry."""

    id: str
    adapter: str
    trust_class: str = "open"
    trust_weight: float = 1.0
    cost_class: str = "standard"
    max_concurrency: int = 2
    priority: int = 100
    tiers: List[str] = field(default_factory=list)
    fallback: bool = False
    model: Optional[str] = None
    timeout: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        if "id" not in data or "adapter" not in data:
            raise ValueError("each [[providers]] entry needs 'id' and 'adapter'")
        timeout = data.get("timeout")
        return cls(
            id=str(data["id"]),
            adapter=str(data["adapter"]),
            trust_class=str(data.get("trust_class", "open")).lower(),
            trust_weight=float(data.get("trust_weight", 1.0)),
            cost_class=str(data.get("cost_class", "standard")).lower(),
            max_concurrency=int(data.get("max_concurrency", 2)),
            priority=int(data.get("priority", 100)),
            tiers=[str(t) for t in data.get("tiers", [])],
            fallback=_parse_bool(data.get("fallback", False)),
            model=data.get("model") or None,
            timeout=float(timeout) if timeout is not None else None,
            options=dict(data.get("options", {})),
        )


def default_providers() -> List[ProviderConfig]:
    """Provider catalog used when no ``[[providers]]`` are configured.

    OpenAI-family and Anthropic-family models are reached only through their
    CLIs.
    """
    return [
        ProviderConfig(
            id="gemini",
            adapter="gemini-cli",
            cost_class="low",
            trust_weight=0.9,
            priority=10,
            tiers=["basic", "premium", "critical"],
        ),
        ProviderConfig(
            id="codex",
            adapter="codex-cli",
            trust_class="cli_only",
            cost_class="standard",
            priority=20,
            tiers=["basic", "premium", "critical"],
        ),
        ProviderConfig(
            id="claude",
            adapter="claude-cli",
            trust_class="cli_only",
            cost_class="premium",
            priority=30,
            tiers=["premium", "critical"],
        ),
    ]


@dataclass
class WallbounceConfig:
    """Top-level configuration object."""

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    tiers: Dict[str, TierConfig] = field(
        default_factory=lambda: {name: TierConfig(**vars(tier)) for name, tier in DEFAULT_TIERS.items()}
    )
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    providers: List[ProviderConfig] = field(default_factory=default_providers)

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "WallbounceConfig":
        config = cls()
        config._apply_toml(data)
        config.validate()
        return config

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "WallbounceConfig":
        """Create configuration from an optional TOML file and the environment."""
        config = cls()

        toml_path = config_file or os.environ.get(CONFIG_FILE_ENV)
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            for default_path in DEFAULT_CONFIG_FILENAMES:
                if Path(default_path).exists():
                    config._load_toml(Path(default_path))
                    break

        config._load_env()
        config.validate()
        return config

    def _load_toml(self, path: Path) -> None:
        if not path.exists():
            logger.warning("Config file not found: %s", path)
            return
        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ValueError(f"Invalid TOML in {path}: {exc}") from exc
        self._apply_toml(data)
        logger.debug("Loaded configuration from %s", path)

    def _apply_toml(self, data: Dict[str, Any]) -> None:
        if "orchestrator" in data:
            self.orchestrator = OrchestratorConfig.from_toml_dict(data["orchestrator"])
        for name, tier_data in (data.get("tiers") or {}).items():
            self.tiers[name] = TierConfig.from_toml_dict(name, tier_data)
        if "consensus" in data:
            self.consensus = ConsensusConfig.from_toml_dict(data["consensus"])
        if "circuit_breaker" in data:
            self.circuit_breaker = CircuitBreakerConfig.from_toml_dict(data["circuit_breaker"])
        if "cache" in data:
            self.cache = CacheConfig.from_toml_dict(data["cache"])
        if "sessions" in data:
            self.sessions = SessionConfig.from_toml_dict(data["sessions"])
        if "aggregation" in data:
            self.aggregation = AggregationConfig.from_toml_dict(data["aggregation"])
        if "logging" in data:
            self.logging = LoggingConfig.from_toml_dict(data["logging"])
        if "observability" in data:
            self.observability = ObservabilityConfig.from_toml_dict(data["observability"])
        if "providers" in data:
            self.providers = [ProviderConfig.from_toml_dict(entry) for entry in data["providers"]]

    def _load_env(self) -> None:
        if level := os.environ.get("WALLBOUNCE_LOG_LEVEL"):
            self.logging.level = level.upper()
        if log_format := os.environ.get("WALLBOUNCE_LOG_FORMAT"):
            self.logging.format = log_format.lower()
        if ttl := os.environ.get("WALLBOUNCE_CACHE_TTL"):
            self.cache.ttl_seconds = float(ttl)
        if cache_backend := os.environ.get("WALLBOUNCE_CACHE_BACKEND"):
            self.cache.backend = cache_backend.lower()
        if session_backend := os.environ.get("WALLBOUNCE_SESSION_BACKEND"):
            self.sessions.backend = session_backend.lower()
        if session_ttl := os.environ.get("WALLBOUNCE_SESSION_TTL"):
            self.sessions.ttl_seconds = float(session_ttl)
        if redis_url := os.environ.get("WALLBOUNCE_REDIS_URL"):
            self.sessions.redis_url = redis_url
        if timeout := os.environ.get("WALLBOUNCE_DEFAULT_TIMEOUT"):
            self.orchestrator.default_timeout = float(timeout)
        if prometheus := os.environ.get("WALLBOUNCE_PROMETHEUS_ENABLED"):
            self.observability.prometheus_enabled = _parse_bool(prometheus)

    def validate(self) -> None:
        """Raise ValueError on inconsistent settings."""
        for name in TIER_NAMES:
            if name not in self.tiers:
                raise ValueError(f"missing tier configuration for '{name}'")
        for tier in self.tiers.values():
            tier.validate()
            if tier.escalate_to is not None and tier.escalate_to not in self.tiers:
                raise ValueError(f"tiers.{tier.name}.escalate_to names unknown tier '{tier.escalate_to}'")
        self.consensus.validate()
        self.sessions.validate()
        if self.cache.backend not in ("memory", "file"):
            raise ValueError(f"cache.backend must be memory or file, got {self.cache.backend!r}")
        if self.orchestrator.default_mode not in ("parallel", "sequential"):
            raise ValueError("orchestrator.default_mode must be parallel or sequential")
        if self.orchestrator.fan_out_cap < 1:
            raise ValueError("orchestrator.fan_out_cap must be >= 1")
        seen = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"duplicate provider id '{provider.id}'")
            seen.add(provider.id)

    def tier(self, name: str) -> TierConfig:
        try:
            return self.tiers[name]
        except KeyError:
            raise ValueError(f"Unknown tier '{name}'") from None

    def setup_logging(self) -> None:
        configure_logging(level=self.logging.level, format=self.logging.format)
