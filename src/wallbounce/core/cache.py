"""
Short-lived response cache.

Memoizes successful provider responses keyed by (provider id, normalized
prompt hash, parameter hash). The only guarantee is that an expired entry is
never returned: expiry is checked lazily on every read, and a periodic sweep
removes whatever nobody read.

Backends:
    MemoryCacheBackend: dict guarded by striped locks, so different keys
        rarely share a lock
    FileCacheBackend: one JSON file per key, written via atomic rename

Same-key writes are last-write-wins; entries are immutable snapshots.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Protocol

from wallbounce.core.providers.base import TokenUsage
from wallbounce.core.resilience import retry_with_backoff

if TYPE_CHECKING:
    from wallbounce.config import CacheConfig

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
LOCK_STRIPES = 32


# =============================================================================
# Keys and entries
# =============================================================================


def normalize_prompt(prompt: str) -> str:
    """NFC-normalize and collapse whitespace so cosmetic edits share a key."""
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", prompt)).strip()


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_parameters(params: Optional[Mapping[str, Any]]) -> str:
    """Stable hash of generation parameters; None-valued keys are ignored."""
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    return _sha256(json.dumps(cleaned, sort_keys=True, default=str))


@dataclass(frozen=True)
class CacheKey:
    """Composite cache key."""

    provider_id: str
    prompt_hash: str
    params_hash: str

    @property
    def digest(self) -> str:
        """Backend storage key."""
        return _sha256("|".join((self.provider_id, self.prompt_hash, self.params_hash)))[:32]


def make_cache_key(provider_id: str, prompt: str, params: Optional[Mapping[str, Any]] = None) -> CacheKey:
    return CacheKey(
        provider_id=provider_id,
        prompt_hash=_sha256(normalize_prompt(prompt)),
        params_hash=hash_parameters(params),
    )


@dataclass(frozen=True)
class CacheEntry:
    """A cached response snapshot."""

    key: CacheKey
    text: str
    created_at: float
    expires_at: float
    model: Optional[str] = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    truncated: bool = False

    def is_live(self, now: float) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.key.provider_id,
            "prompt_hash": self.key.prompt_hash,
            "params_hash": self.key.params_hash,
            "text": self.text,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "model": self.model,
            "tokens": {
                "input_tokens": self.tokens.input_tokens,
                "output_tokens": self.tokens.output_tokens,
                "cached_input_tokens": self.tokens.cached_input_tokens,
                "total_tokens": self.tokens.total_tokens,
            },
            "truncated": self.truncated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        tokens = data.get("tokens") or {}
        return cls(
            key=CacheKey(
                provider_id=data["provider_id"],
                prompt_hash=data["prompt_hash"],
                params_hash=data["params_hash"],
            ),
            text=data["text"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            model=data.get("model"),
            tokens=TokenUsage(**{k: int(v) for k, v in tokens.items()}),
            truncated=bool(data.get("truncated", False)),
        )


# =============================================================================
# Backends
# =============================================================================


class CacheBackend(Protocol):
    """Storage interface behind ResponseCache."""

    def get(self, digest: str) -> Optional[CacheEntry]:
        ...

    def set(self, digest: str, entry: CacheEntry) -> None:
        ...

    def delete(self, digest: str) -> bool:
        ...

    def sweep(self, now: float) -> int:
        ...

    def clear(self) -> int:
        ...

    def count(self) -> int:
        ...


class MemoryCacheBackend:
    """In-process backend with lock striping."""

    def __init__(self, stripes: int = LOCK_STRIPES):
        self._entries: Dict[str, CacheEntry] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, digest: str) -> threading.Lock:
        return self._locks[int(digest[:8], 16) % len(self._locks)]

    def get(self, digest: str) -> Optional[CacheEntry]:
        with self._lock_for(digest):
            return self._entries.get(digest)

    def set(self, digest: str, entry: CacheEntry) -> None:
        with self._lock_for(digest):
            self._entries[digest] = entry

    def delete(self, digest: str) -> bool:
        with self._lock_for(digest):
            return self._entries.pop(digest, None) is not None

    def sweep(self, now: float) -> int:
        removed = 0
        for digest, entry in list(self._entries.items()):
            if entry.is_live(now):
                continue
            with self._lock_for(digest):
                current = self._entries.get(digest)
                if current is not None and not current.is_live(now):
                    del self._entries[digest]
                    removed += 1
        return removed

    def clear(self) -> int:
        count = 0
        for digest in list(self._entries):
            if self.delete(digest):
                count += 1
        return count

    def count(self) -> int:
        return len(self._entries)


class FileCacheBackend:
    """
    One JSON file per entry under ``directory``.

    Cache Structure:
        {directory}/{digest[:2]}/{digest}.json
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        safe = "".join(c for c in digest if c.isalnum())
        return self.directory / safe[:2] / f"{safe}.json"

    def get(self, digest: str) -> Optional[CacheEntry]:
        path = self._path(digest)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return CacheEntry.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as exc:
            logger.warning("Failed to read cache entry %s: %s", path, exc)
            return None

    def set(self, digest: str, entry: CacheEntry) -> None:
        path = self._path(digest)
        path.parent.mkdir(parents=True, exist_ok=True)

        def _write() -> None:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(entry.to_dict(), f)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

        retry_with_backoff(_write, max_retries=2, retryable_exceptions=[OSError], operation="cache write")

    def delete(self, digest: str) -> bool:
        path = self._path(digest)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _files(self) -> List[Path]:
        return [p for p in self.directory.glob("*/*.json") if not p.name.startswith(".tmp-")]

    def sweep(self, now: float) -> int:
        removed = 0
        for path in self._files():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    expires_at = float(json.load(f).get("expires_at", 0))
            except (json.JSONDecodeError, OSError, ValueError, TypeError):
                expires_at = 0.0
            if now >= expires_at:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def clear(self) -> int:
        files = self._files()
        for path in files:
            path.unlink(missing_ok=True)
        return len(files)

    def count(self) -> int:
        return len(self._files())


# =============================================================================
# Response cache
# =============================================================================


class ResponseCache:
    """
    TTL-bounded memo of provider responses.

    Attributes:
        backend: Storage backend
        ttl_seconds: Default entry lifetime
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend: CacheBackend = backend or MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, config: "CacheConfig", *, clock: Callable[[], float] = time.time) -> "ResponseCache":
        backend: CacheBackend
        if config.backend == "file":
            backend = FileCacheBackend(config.get_directory())
        else:
            backend = MemoryCacheBackend()
        return cls(backend, ttl_seconds=config.ttl_seconds, clock=clock)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the live entry for ``key``; expired entries are evicted and treated as absent."""
        entry = self.backend.get(key.digest)
        if entry is not None and (entry.key != key or not entry.is_live(self._clock())):
            if entry.key == key:
                self.backend.delete(key.digest)
            entry = None
        with self._stats_lock:
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
        return entry

    def set(self, key: CacheKey, entry: CacheEntry, ttl: Optional[float] = None) -> CacheEntry:
        """Store ``entry`` under ``key``, re-stamping its lifetime from ``ttl``."""
        now = self._clock()
        lifetime = self.ttl_seconds if ttl is None else ttl
        stamped = CacheEntry(
            key=key,
            text=entry.text,
            created_at=now,
            expires_at=now + lifetime,
            model=entry.model,
            tokens=entry.tokens,
            truncated=entry.truncated,
        )
        self.backend.set(key.digest, stamped)
        return stamped

    def store(
        self,
        key: CacheKey,
        text: str,
        *,
        model: Optional[str] = None,
        tokens: Optional[TokenUsage] = None,
        truncated: bool = False,
        ttl: Optional[float] = None,
    ) -> CacheEntry:
        """Convenience wrapper building the entry from response fields."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            text=text,
            created_at=now,
            expires_at=now,
            model=model,
            tokens=tokens or TokenUsage(),
            truncated=truncated,
        )
        return self.set(key, entry, ttl)

    def expire(self, key: CacheKey) -> bool:
        return self.backend.delete(key.digest)

    def sweep(self) -> int:
        removed = self.backend.sweep(self._clock())
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)
        return removed

    def clear(self) -> int:
        return self.backend.clear()

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        lookups = hits + misses
        return {
            "backend": type(self.backend).__name__,
            "entries": self.backend.count(),
            "ttl_seconds": self.ttl_seconds,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
        }

    # -------------------------------------------------------------------------
    # Background sweeper
    # -------------------------------------------------------------------------

    def start_sweeper(self, interval: float) -> None:
        """Run ``sweep`` every ``interval`` seconds on a daemon thread."""
        if interval <= 0 or self._sweeper is not None:
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval):
                try:
                    self.sweep()
                except OSError as exc:
                    logger.warning("Cache sweep failed: %s", exc)

        self._sweeper = threading.Thread(target=_loop, name="wallbounce-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._stop.set()
        self._sweeper.join(timeout=1.0)
        self._sweeper = None
