"""
Tests for the dispatch middleware pipeline.
"""

import pytest

from zuno.core.universe import Universe
from zuno.events import DispatchResult, StateEvent
from zuno.sync.middleware import (
    FunctionMiddleware,
    LoggingMiddleware,
    Middleware,
    MiddlewareAPI,
    MiddlewarePipeline,
)
from zuno.sync.versions import VersionTable


class Recorder(Middleware):
    """Records entry and exit around the inner chain."""

    def __init__(self, name, trace):
        self.name = name
        self.trace = trace

    async def intercept(self, event, next):
        self.trace.append(f"{self.name}:in")
        result = await next(event)
        self.trace.append(f"{self.name}:out")
        return result


@pytest.fixture
def api() -> MiddlewareAPI:
    return MiddlewareAPI(Universe(), "client-1", VersionTable())


def make_core(trace):
    async def core(event):
        trace.append("core")
        return DispatchResult(ok=True, status=200, body=event.state)
    return core


class TestMiddlewarePipeline:
    """Test composition order and propagation."""

    @pytest.mark.asyncio
    async def test_first_registered_is_outermost(self, api: MiddlewareAPI):
        trace = []
        pipeline = MiddlewarePipeline().use(Recorder("a", trace)).use(Recorder("b", trace))
        dispatch = pipeline.build(make_core(trace), api)

        result = await dispatch(StateEvent("k", 1))

        assert result.ok
        assert trace == ["a:in", "b:in", "core", "b:out", "a:out"]

    @pytest.mark.asyncio
    async def test_empty_pipeline_is_core(self, api: MiddlewareAPI):
        trace = []
        dispatch = MiddlewarePipeline().build(make_core(trace), api)
        result = await dispatch(StateEvent("k", "v"))
        assert result.body == "v"
        assert trace == ["core"]

    @pytest.mark.asyncio
    async def test_short_circuit(self, api: MiddlewareAPI):
        trace = []

        async def block(api, event, next):
            return DispatchResult(ok=False, status=403)

        pipeline = MiddlewarePipeline([FunctionMiddleware(block), Recorder("inner", trace)])
        result = await pipeline.build(make_core(trace), api)(StateEvent("k", 1))

        assert result.status == 403
        assert trace == []

    @pytest.mark.asyncio
    async def test_event_can_be_transformed(self, api: MiddlewareAPI):
        async def double(api, event, next):
            return await next(event.evolve(state=event.state * 2))

        dispatch = MiddlewarePipeline([FunctionMiddleware(double)]).build(make_core([]), api)
        assert (await dispatch(StateEvent("k", 21))).body == 42

    @pytest.mark.asyncio
    async def test_errors_propagate_outward(self, api: MiddlewareAPI):
        """An inner failure reaches the caller through middlewares that do not catch it."""
        trace = []

        async def failing_core(event):
            raise RuntimeError("core failed")

        dispatch = MiddlewarePipeline([Recorder("outer", trace)]).build(failing_core, api)

        with pytest.raises(RuntimeError, match="core failed"):
            await dispatch(StateEvent("k", 1))
        assert trace == ["outer:in"]

    @pytest.mark.asyncio
    async def test_middleware_can_catch(self, api: MiddlewareAPI):
        async def failing_core(event):
            raise RuntimeError("boom")

        async def isolate(api, event, next):
            try:
                return await next(event)
            except RuntimeError as e:
                return DispatchResult(ok=False, status=500, body=str(e))

        dispatch = MiddlewarePipeline([FunctionMiddleware(isolate)]).build(failing_core, api)
        result = await dispatch(StateEvent("k", 1))
        assert result.body == "boom"

    @pytest.mark.asyncio
    async def test_api_is_bound(self, api: MiddlewareAPI):
        seen = {}

        async def inspect(api, event, next):
            seen["client_id"] = api.client_id
            seen["version"] = api.versions.get(event.store_key)
            return await next(event)

        api.versions.observe("k", 7)
        await MiddlewarePipeline([FunctionMiddleware(inspect)]).build(make_core([]), api)(StateEvent("k", 1))

        assert seen == {"client_id": "client-1", "version": 7}

    @pytest.mark.asyncio
    async def test_logging_middleware_passes_through(self, api: MiddlewareAPI):
        trace = []
        pipeline = MiddlewarePipeline([LoggingMiddleware(), Recorder("inner", trace)])
        result = await pipeline.build(make_core(trace), api)(StateEvent("k", 1))

        assert result.ok
        assert trace == ["inner:in", "core", "inner:out"]
        assert len(pipeline) == 2
