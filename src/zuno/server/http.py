"""aiohttp adapter exposing the realtime stream, sync write and snapshot endpoints."""

import asyncio
from typing import Optional

from aiohttp import web

from ..utils.config import ServerConfig
from ..utils.logging import get_logger
from .engine import ApplyEngine, parse_last_event_id

logger = get_logger("zuno.server.http")

ENGINE_KEY = web.AppKey("zuno_engine", ApplyEngine)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def read_body(request: web.Request, limit: int) -> bytes:
    """Read at most ``limit + 1`` bytes so oversize bodies are detectable without buffering them."""
    if request.content_length is not None and request.content_length > limit:
        return b"\0" * (limit + 1)

    chunks = []
    size = 0
    async for chunk in request.content.iter_chunked(64 * 1024):
        chunks.append(chunk)
        size += len(chunk)
        if size > limit:
            break
    return b"".join(chunks)


class ZunoRoutes:
    """Request handlers bound to one engine."""

    def __init__(self, engine: ApplyEngine):
        self.engine = engine

    async def stream(self, request: web.Request) -> web.StreamResponse:
        last_event_id = parse_last_event_id(request.headers, request.query)
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        subscription = self.engine.open_stream(last_event_id)
        try:
            async for frame in subscription:
                await response.write(frame.encode("utf-8"))
        except ConnectionResetError:
            logger.debug("stream_client_disconnected", remote=request.remote)
        except asyncio.CancelledError:
            logger.debug("stream_cancelled", remote=request.remote)
            raise
        finally:
            subscription.close()

        return response

    async def sync(self, request: web.Request) -> web.Response:
        body = await read_body(request, self.engine.config.max_body_bytes)
        result = self.engine.handle_sync(body)
        return web.json_response(result.body, status=result.status)

    async def snapshot(self, request: web.Request) -> web.Response:
        return web.json_response(self.engine.snapshot())


def create_app(
    engine: Optional[ApplyEngine] = None,
    config: Optional[ServerConfig] = None,
) -> web.Application:
    """
    Build an aiohttp application serving the three Zuno endpoints.

    Routes (relative to ``config.route_prefix``):
        GET  /sse       realtime stream, resumable via Last-Event-ID or ?lastEventId=
        POST /sync      sync write
        GET  /snapshot  full authoritative state and log cursor
    """
    engine = engine or ApplyEngine(config)
    prefix = engine.config.route_prefix
    routes = ZunoRoutes(engine)

    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get(f"{prefix}/sse", routes.stream)
    app.router.add_post(f"{prefix}/sync", routes.sync)
    app.router.add_get(f"{prefix}/snapshot", routes.snapshot)

    logger.info("http_routes_registered", prefix=prefix or "/")
    return app


__all__ = ['create_app', 'ZunoRoutes', 'ENGINE_KEY', 'read_body']
