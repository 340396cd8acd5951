import asyncio

from index_build_server import IndexBuildServer
from index_readiness.http_index_client import HttpIndexClient
from index_readiness.index_readiness_poller import IndexReadinessPoller
from index_readiness.models import Failed, PollingConfig, Ready


async def status_changed(snapshot):
    print(f"Index '{snapshot.name}' is now {snapshot.status.value}")


async def main():
    PORT = 8000
    server = IndexBuildServer(build_time=20.0, failure_rate=0.2, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollingConfig(
        poll_interval=1.0, backoff_factor=1.5, max_interval=8.0, timeout=60.0
    )

    async with HttpIndexClient(f"http://localhost:{PORT}") as client:
        await client.create_index(
            "vector_index",
            {"fields": [{"type": "vector", "path": "embedding", "numDimensions": 1536}]},
        )

        poller = IndexReadinessPoller(
            "vector_index",
            client.get_index_status,
            config,
            on_status_change=status_changed,
        )
        try:
            outcome = await poller.wait_for_index_ready()
        except Exception as e:
            print(f"Error occurred: {e}")
        else:
            if isinstance(outcome, Ready):
                print(f"Index ready after {outcome.elapsed:.1f}s")
            elif isinstance(outcome, Failed):
                print(f"Index will never work: {outcome.detail}")
            else:
                print(f"Index not ready yet after {outcome.elapsed:.1f}s, try again later")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
