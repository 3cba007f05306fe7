"""Session store for multi-turn continuation.

A session holds an append-only list of turns. Appending replaces the stored
record (or pushes one list element in Redis) in a single atomic step, so a
concurrent reader sees either the old turn list or the new one, never a
partially written turn.

Backends:
    InMemorySessionStore: process-local dict with per-session locks
    FileSessionStore: one JSON file per session, guarded by filelock
    RedisSessionStore: metadata key + turn list per session, native key expiry

Each backend enforces a per-owner session limit. When an owner is at the
limit, ``create`` either raises SessionLimitExceededError ("reject") or
deletes the owner's oldest session first ("evict_oldest"). Oldest means
smallest (created_at, session_id), which makes eviction deterministic.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from uuid import uuid4

import redis
from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel, ConfigDict, Field

from wallbounce.core.errors import SessionError, SessionLimitExceededError, SessionNotFoundError
from wallbounce.core.resilience import retry_with_backoff

if TYPE_CHECKING:
    from wallbounce.config import SessionConfig

logger = logging.getLogger(__name__)

EVICT_OLDEST = "evict_oldest"
REJECT = "reject"
LOCK_TIMEOUT_SECONDS = 10


# =============================================================================
# Models
# =============================================================================


class SessionTurn(BaseModel):
    """One request/answer exchange. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"turn-{uuid4().hex[:8]}")
    request_text: str = Field(..., description="Prompt submitted by the caller")
    answer: str = Field(..., description="Integrated answer returned")
    timestamp: float = Field(default_factory=time.time)
    request_id: Optional[str] = None
    confidence: Optional[float] = None
    agreement: Optional[float] = None
    providers: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """A conversation session."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(default_factory=lambda: f"session-{uuid4().hex[:12]}")
    conversation_id: str = Field(default_factory=lambda: f"conv-{uuid4().hex[:12]}")
    owner: str = "anonymous"
    turns: Tuple[SessionTurn, ...] = ()
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def with_turn(self, turn: SessionTurn, *, now: float, ttl_seconds: float) -> "SessionRecord":
        return self.model_copy(
            update={
                "turns": self.turns + (turn,),
                "updated_at": now,
                "expires_at": now + ttl_seconds,
            }
        )

    def recent_turns(self, limit: int) -> Tuple[SessionTurn, ...]:
        if limit <= 0:
            return ()
        return self.turns[-limit:]

    @property
    def sort_key(self) -> Tuple[float, str]:
        return (self.created_at, self.session_id)


# =============================================================================
# Store interface
# =============================================================================


class SessionStore(ABC):
    """
    Base class for session backends.

    The narrow interface used by the orchestrator is ``get``, ``append`` and
    ``expire``; ``create`` applies the owner limit.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 86400.0,
        max_sessions_per_owner: int = 10,
        eviction_policy: str = REJECT,
        clock: Callable[[], float] = time.time,
    ):
        if eviction_policy not in (REJECT, EVICT_OLDEST):
            raise ValueError(f"Unknown eviction policy '{eviction_policy}'")
        self.ttl_seconds = ttl_seconds
        self.max_sessions_per_owner = max_sessions_per_owner
        self.eviction_policy = eviction_policy
        self._clock = clock

    # -- public API -----------------------------------------------------------

    def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return a live session or None (expired sessions are removed)."""
        record = self._load(session_id)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            logger.debug("Session %s has expired, removing", session_id)
            self._delete(record)
            return None
        return record

    def append(self, session_id: str, turn: SessionTurn) -> SessionRecord:
        """Append one turn atomically and refresh the session expiry.

        Raises:
            SessionNotFoundError: Session missing or expired
        """
        return self._append(session_id, turn, self._clock())

    def expire(self, session_id: str) -> bool:
        """Delete a session. Returns False if it did not exist."""
        record = self._load(session_id)
        if record is None:
            return False
        return self._delete(record)

    def create(
        self,
        owner: str,
        *,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        exist_ok: bool = False,
    ) -> SessionRecord:
        """Create a session for ``owner`` subject to the owner limit.

        With ``exist_ok`` a live session already stored under ``session_id``
        is returned instead of raising.

        Raises:
            SessionLimitExceededError: Owner at the limit and policy is "reject"
            SessionError: A live session with ``session_id`` already exists
        """
        with self._owner_lock(owner):
            existing = self.get(session_id) if session_id is not None else None
            if existing is not None:
                if exist_ok:
                    return existing
                raise SessionError(f"Session '{session_id}' already exists")

            live = self.list_for_owner(owner)
            while len(live) >= self.max_sessions_per_owner:
                if self.eviction_policy == REJECT:
                    raise SessionLimitExceededError(owner, self.max_sessions_per_owner)
                oldest = live.pop(0)
                logger.info(
                    "Owner %s at session limit (%d); evicting %s",
                    owner,
                    self.max_sessions_per_owner,
                    oldest.session_id,
                )
                self._delete(oldest)

            now = self._clock()
            fields: Dict[str, Any] = {
                "owner": owner,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self.ttl_seconds,
            }
            if session_id is not None:
                fields["session_id"] = session_id
            if conversation_id is not None:
                fields["conversation_id"] = conversation_id
            record = SessionRecord(**fields)
            self._insert(record)
            logger.debug("Created session %s for owner %s", record.session_id, owner)
            return record

    def get_or_create(self, session_id: str, owner: str) -> SessionRecord:
        record = self.get(session_id)
        if record is not None:
            return record
        return self.create(owner, session_id=session_id, exist_ok=True)

    def list_for_owner(self, owner: str) -> List[SessionRecord]:
        """Live sessions of ``owner``, oldest first."""
        now = self._clock()
        records = []
        for session_id in self._owner_session_ids(owner):
            record = self._load(session_id)
            if record is None:
                continue
            if record.is_expired(now):
                self._delete(record)
                continue
            records.append(record)
        return sorted(records, key=lambda r: r.sort_key)

    def sweep_expired(self) -> int:
        """Remove every expired session. Returns the number removed."""
        now = self._clock()
        removed = 0
        for session_id in self._all_session_ids():
            record = self._load(session_id)
            if record is not None and record.is_expired(now) and self._delete(record):
                removed += 1
        if removed:
            logger.debug("Session sweep removed %d expired sessions", removed)
        return removed

    # -- backend primitives -----------------------------------------------------

    @abstractmethod
    def _load(self, session_id: str) -> Optional[SessionRecord]:
        """Read a record regardless of expiry."""

    @abstractmethod
    def _insert(self, record: SessionRecord) -> None:
        """Persist a new record and index it under its owner."""

    @abstractmethod
    def _append(self, session_id: str, turn: SessionTurn, now: float) -> SessionRecord:
        """Atomically append a turn."""

    @abstractmethod
    def _delete(self, record: SessionRecord) -> bool:
        """Remove a record and its owner index entry."""

    @abstractmethod
    def _owner_session_ids(self, owner: str) -> List[str]:
        ...

    @abstractmethod
    def _all_session_ids(self) -> List[str]:
        ...

    @abstractmethod
    @contextmanager
    def _owner_lock(self, owner: str) -> Iterator[None]:
        """Serialize session creation per owner."""


# =============================================================================
# In-memory backend
# =============================================================================


class InMemorySessionStore(SessionStore):
    """Process-local store. Records are immutable and swapped wholesale."""

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._records: Dict[str, SessionRecord] = {}
        self._owners: Dict[str, Set[str]] = {}
        self._index_lock = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = {}
        self._owner_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, table: Dict[str, threading.Lock], key: str) -> threading.Lock:
        with self._index_lock:
            return table.setdefault(key, threading.Lock())

    def _load(self, session_id: str) -> Optional[SessionRecord]:
        return self._records.get(session_id)

    def _insert(self, record: SessionRecord) -> None:
        with self._index_lock:
            self._records[record.session_id] = record
            self._owners.setdefault(record.owner, set()).add(record.session_id)

    def _append(self, session_id: str, turn: SessionTurn, now: float) -> SessionRecord:
        with self._lock_for(self._session_locks, session_id):
            record = self._records.get(session_id)
            if record is None or record.is_expired(now):
                raise SessionNotFoundError(session_id)
            updated = record.with_turn(turn, now=now, ttl_seconds=self.ttl_seconds)
            self._records[session_id] = updated
            return updated

    def _delete(self, record: SessionRecord) -> bool:
        with self._index_lock:
            removed = self._records.pop(record.session_id, None) is not None
            owned = self._owners.get(record.owner)
            if owned is not None:
                owned.discard(record.session_id)
                if not owned:
                    del self._owners[record.owner]
            self._session_locks.pop(record.session_id, None)
        return removed

    def _owner_session_ids(self, owner: str) -> List[str]:
        with self._index_lock:
            return sorted(self._owners.get(owner, ()))

    def _all_session_ids(self) -> List[str]:
        with self._index_lock:
            return sorted(self._records)

    @contextmanager
    def _owner_lock(self, owner: str) -> Iterator[None]:
        with self._lock_for(self._owner_locks, owner):
            yield


# =============================================================================
# File backend
# =============================================================================


def _safe_name(value: str) -> str:
    """Sanitize an identifier to prevent path traversal."""
    return "".join(c for c in value if c.isalnum() or c in "-_") or "_"


class FileSessionStore(SessionStore):
    """
    One JSON document per session with file locking.

    Layout:
        {storage_path}/sessions/{session_id}.json
        {storage_path}/sessions/{session_id}.lock
        {storage_path}/owners/{owner}.lock
    """

    def __init__(self, storage_path: Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.storage_path = Path(storage_path)
        self._sessions_dir = self.storage_path / "sessions"
        self._owners_dir = self.storage_path / "owners"
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._owners_dir.mkdir(parents=True, exist_ok=True)

    def _file_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{_safe_name(session_id)}.json"

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path.with_suffix(".lock")), timeout=LOCK_TIMEOUT_SECONDS)

    def _read(self, path: Path) -> Optional[SessionRecord]:
        try:
            return SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as exc:
            logger.warning("Failed to load session file %s: %s", path, exc)
            return None

    def _write(self, path: Path, record: SessionRecord) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _locked(self, path: Path, operation: str, func: Callable[[], Any]) -> Any:
        def _run() -> Any:
            with self._lock(path):
                return func()

        return retry_with_backoff(
            _run,
            max_retries=2,
            retryable_exceptions=[FileLockTimeout],
            operation=operation,
        )

    def _load(self, session_id: str) -> Optional[SessionRecord]:
        path = self._file_path(session_id)
        if not path.exists():
            return None
        # Writers replace the file atomically, so reads need no lock.
        return self._read(path)

    def _insert(self, record: SessionRecord) -> None:
        path = self._file_path(record.session_id)
        self._locked(path, "session insert", lambda: self._write(path, record))

    def _append(self, session_id: str, turn: SessionTurn, now: float) -> SessionRecord:
        path = self._file_path(session_id)

        def _do_append() -> SessionRecord:
            record = self._read(path)
            if record is None or record.is_expired(now):
                raise SessionNotFoundError(session_id)
            updated = record.with_turn(turn, now=now, ttl_seconds=self.ttl_seconds)
            self._write(path, updated)
            return updated

        return self._locked(path, "session append", _do_append)

    def _delete(self, record: SessionRecord) -> bool:
        path = self._file_path(record.session_id)

        def _do_delete() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        removed = self._locked(path, "session delete", _do_delete)
        path.with_suffix(".lock").unlink(missing_ok=True)
        return removed

    def _iter_records(self) -> Iterator[SessionRecord]:
        for path in sorted(self._sessions_dir.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            record = self._read(path)
            if record is not None:
                yield record

    def _owner_session_ids(self, owner: str) -> List[str]:
        return [record.session_id for record in self._iter_records() if record.owner == owner]

    def _all_session_ids(self) -> List[str]:
        return [record.session_id for record in self._iter_records()]

    @contextmanager
    def _owner_lock(self, owner: str) -> Iterator[None]:
        lock = FileLock(str(self._owners_dir / f"{_safe_name(owner)}.lock"), timeout=LOCK_TIMEOUT_SECONDS)
        with lock:
            yield


# =============================================================================
# Redis backend
# =============================================================================


REDIS_RETRYABLE = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


class RedisSessionStore(SessionStore):
    """
    Redis-backed store.

    Keys (``prefix`` defaults to "wallbounce:session:"):
        {prefix}{session_id}          session metadata JSON (no turns)
        {prefix}{session_id}:turns    list of turn JSON documents (RPUSH)
        {prefix}owner:{owner}         sorted set of session ids scored by created_at
        {prefix}owner-lock:{owner}    creation lock

    Turn appends are a single RPUSH inside a MULTI block, so readers never see
    a half-written turn. Keys carry a native TTL refreshed on every append.
    """

    def __init__(
        self,
        client: Optional["redis.Redis"] = None,
        *,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "wallbounce:session:",
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self._prefix = key_prefix

    def _meta_key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def _turns_key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}:turns"

    def _owner_key(self, owner: str) -> str:
        return f"{self._prefix}owner:{owner}"

    def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        return retry_with_backoff(
            func,
            max_retries=2,
            retryable_exceptions=list(REDIS_RETRYABLE),
            operation=f"redis {operation}",
        )

    def _ttl(self, record: SessionRecord) -> int:
        return max(1, int(record.expires_at - self._clock()) + 1)

    @staticmethod
    def _meta_json(record: SessionRecord) -> str:
        return record.model_dump_json(exclude={"turns"})

    def _load(self, session_id: str) -> Optional[SessionRecord]:
        def _read() -> Tuple[Optional[str], List[str]]:
            pipe = self._client.pipeline(transaction=True)
            pipe.get(self._meta_key(session_id))
            pipe.lrange(self._turns_key(session_id), 0, -1)
            meta, turns = pipe.execute()
            return meta, turns or []

        meta, turns = self._call("load", _read)
        if not meta:
            return None
        data = json.loads(meta)
        data["turns"] = [json.loads(item) for item in turns]
        return SessionRecord.model_validate(data)

    def _insert(self, record: SessionRecord) -> None:
        def _write() -> None:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(self._meta_key(record.session_id), self._meta_json(record), ex=self._ttl(record))
            pipe.zadd(self._owner_key(record.owner), {record.session_id: record.created_at})
            pipe.execute()

        self._call("insert", _write)

    def _append(self, session_id: str, turn: SessionTurn, now: float) -> SessionRecord:
        record = self._load(session_id)
        if record is None or record.is_expired(now):
            raise SessionNotFoundError(session_id)
        updated = record.with_turn(turn, now=now, ttl_seconds=self.ttl_seconds)
        ttl = self._ttl(updated)

        def _write() -> None:
            pipe = self._client.pipeline(transaction=True)
            pipe.rpush(self._turns_key(session_id), turn.model_dump_json())
            pipe.set(self._meta_key(session_id), self._meta_json(updated), ex=ttl)
            pipe.expire(self._turns_key(session_id), ttl)
            pipe.execute()

        self._call("append", _write)
        return updated

    def _delete(self, record: SessionRecord) -> bool:
        def _remove() -> int:
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(self._meta_key(record.session_id), self._turns_key(record.session_id))
            pipe.zrem(self._owner_key(record.owner), record.session_id)
            deleted, _ = pipe.execute()
            return int(deleted or 0)

        return self._call("delete", _remove) > 0

    def _owner_session_ids(self, owner: str) -> List[str]:
        ids = list(self._call("owner index", lambda: self._client.zrange(self._owner_key(owner), 0, -1)))
        live = []
        for session_id in ids:
            exists = self._call("exists", lambda sid=session_id: self._client.exists(self._meta_key(sid)))
            if exists:
                live.append(session_id)
            else:
                # Expired by Redis; drop the dangling index entry.
                self._call("index prune", lambda sid=session_id: self._client.zrem(self._owner_key(owner), sid))
        return live

    def _all_session_ids(self) -> List[str]:
        owner_prefix = f"{self._prefix}owner:"
        ids: List[str] = []
        for key in self._call("scan", lambda: list(self._client.scan_iter(match=f"{owner_prefix}*"))):
            ids.extend(self._owner_session_ids(key[len(owner_prefix):]))
        return ids

    @contextmanager
    def _owner_lock(self, owner: str) -> Iterator[None]:
        lock = self._client.lock(
            f"{self._prefix}owner-lock:{owner}",
            timeout=LOCK_TIMEOUT_SECONDS,
            blocking_timeout=LOCK_TIMEOUT_SECONDS,
        )
        if not lock.acquire():
            raise SessionError(f"Could not acquire session lock for owner '{owner}'")
        try:
            yield
        finally:
            lock.release()


# =============================================================================
# Factory
# =============================================================================


def create_session_store(
    config: "SessionConfig",
    *,
    clock: Callable[[], float] = time.time,
    redis_client: Optional["redis.Redis"] = None,
) -> SessionStore:
    """Build the configured backend."""
    common: Dict[str, Any] = {
        "ttl_seconds": config.ttl_seconds,
        "max_sessions_per_owner": config.max_sessions_per_owner,
        "eviction_policy": config.eviction_policy,
        "clock": clock,
    }
    if config.backend == "file":
        return FileSessionStore(config.get_directory(), **common)
    if config.backend == "redis":
        return RedisSessionStore(redis_client, url=config.redis_url, key_prefix=config.key_prefix, **common)
    return InMemorySessionStore(**common)


__all__ = [
    "EVICT_OLDEST",
    "REJECT",
    "FileSessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionRecord",
    "SessionStore",
    "SessionTurn",
    "create_session_store",
]
