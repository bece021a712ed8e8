"""One shared engine per process, loaded once.

States: uninitialized -> loading -> loaded, or loading -> failed. A failed
load discards the handle; the next acquire() starts over. Concurrent
acquire() calls during a load all await the same in-flight attempt.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .common import with_timeout
from .engine import Engine, load_ffmpeg_engine
from .errors import EngineLoadError

logger = logging.getLogger(__name__)


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class EngineManager:
    """Owns the engine handle and serializes its loading."""

    def __init__(
        self,
        loader: Callable[[], Awaitable[Engine]] = load_ffmpeg_engine,
        load_timeout: Optional[float] = 60.0,
    ):
        self._loader = loader
        self._load_timeout = load_timeout
        self._engine: Optional[Engine] = None
        self._pending: Optional[asyncio.Future] = None
        self.state = EngineState.UNINITIALIZED
        self.load_count = 0

    @property
    def is_loaded(self) -> bool:
        return self.state is EngineState.LOADED

    async def acquire(self) -> Engine:
        """Return the loaded engine, loading it on first use.

        The shared load is shielded: cancelling one waiting caller does
        not abort the load for the others.

        Raises:
            EngineLoadError: The load failed or timed out.
        """
        if self._engine is not None:
            return self._engine
        if self._pending is None:
            self.state = EngineState.LOADING
            self._pending = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._pending)

    async def _load(self) -> Engine:
        self.load_count += 1
        try:
            engine = await with_timeout(self._loader(), self._load_timeout, "loading engine")
        except Exception as exc:
            self.state = EngineState.FAILED
            self._pending = None
            logger.error("Engine load failed: %s", exc)
            if isinstance(exc, EngineLoadError):
                raise
            raise EngineLoadError(f"Failed to load engine: {exc}") from exc
        self._engine = engine
        self._pending = None
        self.state = EngineState.LOADED
        return engine

    def shutdown(self) -> None:
        """Close the engine and return to the uninitialized state."""
        if self._engine is not None:
            self._engine.close()
        self._engine = None
        self._pending = None
        self.state = EngineState.UNINITIALIZED


_default_manager: Optional[EngineManager] = None


def default_manager() -> EngineManager:
    """Process-wide manager used when callers do not pass one."""
    global _default_manager
    if _default_manager is None:
        _default_manager = EngineManager()
    return _default_manager
