"""CLI execution context.

Builds the configuration and the orchestrator lazily so commands that only
inspect the cache or a session never construct provider adapters.
"""

from typing import Optional

from wallbounce.config import WallbounceConfig
from wallbounce.core.cache import ResponseCache
from wallbounce.core.orchestrator import Orchestrator
from wallbounce.core.sessions import SessionStore, create_session_store


class CLIContext:
    """Resolved configuration plus lazily built collaborators."""

    def __init__(
        self,
        config_file: Optional[str] = None,
        config: Optional[WallbounceConfig] = None,
        orchestrator: Optional[Orchestrator] = None,
    ):
        self._config_file = config_file
        self._config = config
        self._orchestrator = orchestrator
        self._cache: Optional[ResponseCache] = None
        self._sessions: Optional[SessionStore] = None

    @property
    def config(self) -> WallbounceConfig:
        if self._config is None:
            self._config = WallbounceConfig.from_env(self._config_file)
        return self._config

    @property
    def orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            self._orchestrator = Orchestrator.from_config(self.config, start_sweeper=False)
        return self._orchestrator

    @property
    def cache(self) -> ResponseCache:
        if self._orchestrator is not None and self._orchestrator.cache is not None:
            return self._orchestrator.cache
        if self._cache is None:
            self._cache = ResponseCache.from_config(self.config.cache)
        return self._cache

    @property
    def sessions(self) -> SessionStore:
        if self._orchestrator is not None and self._orchestrator.sessions is not None:
            return self._orchestrator.sessions
        if self._sessions is None:
            self._sessions = create_session_store(self.config.sessions)
        return self._sessions
