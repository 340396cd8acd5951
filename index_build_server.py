import random
from datetime import datetime

from aiohttp import web
from loguru import logger


class IndexBuildServer:
    """Simulated control plane that builds indexes in the background.

    An index is PENDING right after submission, BUILDING once half of
    ``build_time`` has passed and READY (and queryable) after ``build_time``.
    With probability ``failure_rate`` a build ends up FAILED instead, and with
    probability ``error_rate`` a status request answers 503.
    """

    def __init__(
        self,
        build_time: float = 10.0,
        failure_rate: float = 0.0,
        error_rate: float = 0.1,
        failure_detail: str = "disk quota exceeded",
    ):
        self.build_time = build_time
        self.failure_rate = failure_rate
        self.error_rate = error_rate
        self.failure_detail = failure_detail
        self.indexes = {}
        self.app = web.Application()
        self.app.router.add_post("/indexes", self.handle_create)
        self.app.router.add_get("/indexes/{name}", self.handle_status)
        self.logger = logger
        self._runner = None

    async def handle_create(self, request):
        payload = await request.json()
        name = payload.get("name")
        if not name:
            return web.json_response({"error": "name is required"}, status=400)

        if name in self.indexes:
            self.logger.info(f"Index '{name}' already exists")
            return web.json_response({"name": name}, status=200)

        self.indexes[name] = {
            "submitted_at": datetime.now(),
            "definition": payload.get("definition") or {},
            "fails": random.random() < self.failure_rate,
        }
        self.logger.info(f"Index '{name}' submitted for build")
        return web.json_response({"name": name}, status=201)

    async def handle_status(self, request):
        name = request.match_info["name"]

        if random.random() < self.error_rate:
            self.logger.info("Returning unavailable status")
            return web.json_response({"error": "unavailable"}, status=503)

        index = self.indexes.get(name)
        if index is None:
            return web.json_response({"error": f"index '{name}' not found"}, status=404)

        elapsed = (datetime.now() - index["submitted_at"]).total_seconds()

        if elapsed >= self.build_time:
            if index["fails"]:
                self.logger.info(f"Returning failed status for '{name}'")
                return web.json_response(
                    {
                        "name": name,
                        "status": "FAILED",
                        "queryable": False,
                        "error_detail": self.failure_detail,
                    }
                )
            self.logger.info(f"Returning ready status for '{name}'")
            return web.json_response({"name": name, "status": "READY", "queryable": True})

        status = "BUILDING" if elapsed >= self.build_time / 2 else "PENDING"
        self.logger.info(
            f"Returning {status.lower()} status for '{name}' (elapsed: {elapsed:.1f}s)"
        )
        return web.json_response({"name": name, "status": status, "queryable": False})

    async def start(self, port: int = 8080):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
