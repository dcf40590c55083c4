"""
Dispatch middleware.

A middleware wraps the dispatch of one event::

    class Audit(Middleware):
        async def intercept(self, event, next):
            result = await next(event)
            audit_log.append((event.store_key, result.ok))
            return result

Middlewares are composed so the first one registered is outermost and the
orchestrator's own dispatch is innermost. A middleware may return its own
result instead of calling ``next``. Exceptions raised further in propagate
out through every middleware that does not catch them.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from ..core.universe import Universe
from ..events import DispatchResult, StateEvent
from ..utils.logging import get_logger
from .versions import VersionTable

logger = get_logger("zuno.sync.middleware")

Dispatch = Callable[[StateEvent], Awaitable[DispatchResult]]


@dataclass(frozen=True)
class MiddlewareAPI:
    """What a middleware can see of the client it runs in."""
    universe: Universe
    client_id: str
    versions: VersionTable


class Middleware(ABC):
    """Base class for dispatch middleware."""

    api: Optional[MiddlewareAPI] = None

    def bind(self, api: MiddlewareAPI) -> None:
        """Called once when the pipeline is built."""
        self.api = api

    @abstractmethod
    async def intercept(self, event: StateEvent, next: Dispatch) -> DispatchResult:
        """Handle ``event``, usually by awaiting ``next(event)``."""


class FunctionMiddleware(Middleware):
    """Adapts ``async fn(api, event, next)`` to the middleware interface."""

    def __init__(self, fn: Callable[[MiddlewareAPI, StateEvent, Dispatch], Awaitable[DispatchResult]]):
        self.fn = fn

    async def intercept(self, event: StateEvent, next: Dispatch) -> DispatchResult:
        return await self.fn(self.api, event, next)


class LoggingMiddleware(Middleware):
    """Logs every dispatched event and its outcome."""

    def __init__(self, logger_name: str = "zuno.dispatch"):
        self.logger = get_logger(logger_name)

    async def intercept(self, event: StateEvent, next: Dispatch) -> DispatchResult:
        start = time.perf_counter()
        self.logger.debug(
            "dispatch_started",
            store_key=event.store_key,
            origin=event.origin,
            via=event.via.value if event.via else None,
        )
        try:
            result = await next(event)
        except Exception as e:
            self.logger.error("dispatch_failed", store_key=event.store_key, error=str(e))
            raise

        self.logger.info(
            "dispatch_finished",
            store_key=event.store_key,
            ok=result.ok,
            status=result.status,
            reason=result.reason.value if result.reason else None,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result


class MiddlewarePipeline:
    """Ordered list of middlewares composed around a core dispatch."""

    def __init__(self, middlewares: Optional[List[Middleware]] = None):
        self._middlewares: List[Middleware] = list(middlewares or [])

    def use(self, middleware: Middleware) -> "MiddlewarePipeline":
        self._middlewares.append(middleware)
        return self

    def build(self, core: Dispatch, api: MiddlewareAPI) -> Dispatch:
        """Compose the pipeline; the first middleware added runs first."""
        handler = core
        for middleware in reversed(self._middlewares):
            middleware.bind(api)
            handler = _wrap(middleware, handler)
        return handler

    def __len__(self) -> int:
        return len(self._middlewares)


def _wrap(middleware: Middleware, next_handler: Dispatch) -> Dispatch:
    async def handler(event: StateEvent) -> DispatchResult:
        return await middleware.intercept(event, next_handler)
    return handler


__all__ = [
    'Dispatch',
    'MiddlewareAPI',
    'Middleware',
    'FunctionMiddleware',
    'LoggingMiddleware',
    'MiddlewarePipeline',
]
