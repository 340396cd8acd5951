import asyncio
from typing import AsyncGenerator

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from loguru import logger
from index_build_server import IndexBuildServer
from index_readiness.errors import FatalLookupError, TransientLookupError
from index_readiness.http_index_client import HttpIndexClient
from index_readiness.index_readiness_poller import IndexReadinessPoller
from index_readiness.models import Failed, IndexStatus, PollingConfig, Ready, TimedOut

BASE_URL_TEMPLATE = "http://localhost:{}"
DEFINITION = {"mappings": {"dynamic": True}}


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[IndexBuildServer, None]:
    """Start and yield a test IndexBuildServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = IndexBuildServer(build_time=0.5, error_rate=0.0)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> PollingConfig:
    """Provide a fast polling configuration for the client."""
    return PollingConfig(
        poll_interval=0.1,
        backoff_factor=1.5,
        max_interval=0.3,
        timeout=5.0,
    )


@pytest.mark.asyncio
async def test_successful_build(server, config):
    """Test normal submit-then-wait flow."""
    status_changes = []
    server_instance, port = server

    async def status_callback(snapshot):
        status_changes.append(snapshot.status)

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        assert await client.create_index("default", DEFINITION) is True

        poller = IndexReadinessPoller(
            "default", client.get_index_status, config, on_status_change=status_callback
        )
        result = await poller.wait_for_index_ready()

    assert isinstance(result, Ready)
    assert result.elapsed > 0
    assert IndexStatus.pending in status_changes
    assert IndexStatus.ready in status_changes


@pytest.mark.asyncio
async def test_failed_build(server, config):
    """Test a build that the control plane reports as failed."""
    server_instance, port = server
    server_instance.failure_rate = 1.0

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        await client.create_index("default", DEFINITION)
        poller = IndexReadinessPoller("default", client.get_index_status, config)
        result = await poller.wait_for_index_ready()

    assert isinstance(result, Failed)
    assert result.detail == "disk quota exceeded"


@pytest.mark.asyncio
async def test_timeout_scenario(server, config):
    """Test timeout handling."""
    server_instance, port = server
    server_instance.build_time = 30.0
    config.timeout = 1.0

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        await client.create_index("default", DEFINITION)
        poller = IndexReadinessPoller("default", client.get_index_status, config)
        result = await poller.wait_for_index_ready()

    assert isinstance(result, TimedOut)
    assert result.elapsed >= 0.9


@pytest.mark.asyncio
async def test_unknown_index(server):
    server_instance, port = server

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        assert await client.get_index_status("missing") is None


@pytest.mark.asyncio
async def test_unavailable_responses_are_transient(server, config):
    """Test that 503s keep the poller going until the timeout."""
    server_instance, port = server
    server_instance.error_rate = 1.0
    config.timeout = 0.5

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        await client.create_index("default", DEFINITION)
        with pytest.raises(TransientLookupError):
            await client.get_index_status("default")

        poller = IndexReadinessPoller("default", client.get_index_status, config)
        result = await poller.wait_for_index_ready()

    assert isinstance(result, TimedOut)
    assert result.attempts > 1


@pytest.mark.asyncio
async def test_server_unavailable(unused_tcp_port_factory, config):
    """Test behavior when server is not available."""
    config.timeout = 0.5
    base_url = BASE_URL_TEMPLATE.format(unused_tcp_port_factory())

    async with HttpIndexClient(base_url) as client:
        with pytest.raises(TransientLookupError):
            await client.get_index_status("default")

        poller = IndexReadinessPoller("default", client.get_index_status, config)
        result = await poller.wait_for_index_ready()

    assert isinstance(result, TimedOut)


async def serve_status(handler, port: int) -> web.AppRunner:
    """Serve a single GET /indexes/{name} handler on the given port."""
    app = web.Application()
    app.router.add_get("/indexes/{name}", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "localhost", port).start()
    return runner


@pytest.mark.asyncio
async def test_forbidden_is_fatal(unused_tcp_port_factory, config):
    """Test that a 403 from the control plane ends the poll immediately."""

    async def forbidden(request):
        return web.json_response({"error": "forbidden"}, status=403)

    port = unused_tcp_port_factory()
    runner = await serve_status(forbidden, port)
    errors = []
    sink_id = logger.add(errors.append, level="ERROR")

    try:
        async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
            poller = IndexReadinessPoller("default", client.get_index_status, config)
            with pytest.raises(FatalLookupError):
                await poller.wait_for_index_ready()
    finally:
        logger.remove(sink_id)
        await runner.cleanup()

    assert len(errors) == 1
    assert "403" in errors[0]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 501, 505, 507, 520, 599])
async def test_server_errors_are_transient(unused_tcp_port_factory, status):
    """Test that every 5xx is retried rather than treated as fatal."""

    async def server_error(request):
        return web.json_response({"error": "server error"}, status=status)

    port = unused_tcp_port_factory()
    runner = await serve_status(server_error, port)

    try:
        async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
            with pytest.raises(TransientLookupError):
                await client.get_index_status("default")
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["prod?v=2", "prod#v2", "prod/v2", "prod%3Fv"])
async def test_index_name_is_escaped(server, config, name):
    """Test that special characters in a name never address another index."""
    server_instance, port = server
    server_instance.build_time = 0.0
    config.timeout = 0.3

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        await client.create_index("prod", DEFINITION)
        assert await client.get_index_status(name) is None

        poller = IndexReadinessPoller(name, client.get_index_status, config)
        result = await poller.wait_for_index_ready()

    assert isinstance(result, TimedOut)


@pytest.mark.asyncio
async def test_answer_for_another_index_is_fatal(unused_tcp_port_factory):
    async def wrong_index(request):
        return web.json_response({"name": "other", "status": "READY", "queryable": True})

    port = unused_tcp_port_factory()
    runner = await serve_status(wrong_index, port)

    try:
        async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
            with pytest.raises(FatalLookupError):
                await client.get_index_status("default")
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_create_is_idempotent(server):
    server_instance, port = server

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        assert await client.create_index("default", DEFINITION) is True
        assert await client.create_index("default", DEFINITION) is False

    assert list(server_instance.indexes) == ["default"]


@pytest.mark.asyncio
async def test_create_without_name_raises(server):
    server_instance, port = server

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:
        with pytest.raises(aiohttp.ClientResponseError):
            await client.create_index("", DEFINITION)


@pytest.mark.asyncio
async def test_shared_session(server):
    """Test that a caller-provided session is left open."""
    server_instance, port = server

    async with aiohttp.ClientSession() as session:
        async with HttpIndexClient(BASE_URL_TEMPLATE.format(port), session) as client:
            await client.create_index("default", DEFINITION)
        assert not session.closed


@pytest.mark.asyncio
async def test_client_without_session():
    client = HttpIndexClient("http://localhost:1")

    with pytest.raises(RuntimeError):
        await client.get_index_status("default")


@pytest.mark.asyncio
async def test_multiple_indexes(server, config):
    """Test multiple pollers waiting simultaneously on different indexes."""
    server_instance, port = server

    async with HttpIndexClient(BASE_URL_TEMPLATE.format(port)) as client:

        async def build(name):
            await client.create_index(name, DEFINITION)
            poller = IndexReadinessPoller(name, client.get_index_status, config)
            return await poller.wait_for_index_ready()

        results = await asyncio.gather(*[build(f"index_{i}") for i in range(3)])

    assert all(isinstance(result, Ready) for result in results)
