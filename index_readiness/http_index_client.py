import asyncio
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger
from index_readiness.errors import FatalLookupError, TransientLookupError
from index_readiness.models import IndexStatusSnapshot


class HttpIndexClient:
    """Talks to an index control plane exposing ``/indexes`` over HTTP.

    Use it as an async context manager to let it own its session, or hand it
    an existing ``aiohttp.ClientSession``.
    """

    def __init__(
        self, base_url: str, session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self._owns_session = session is None
        self.logger = logger

    async def __aenter__(self) -> "HttpIndexClient":
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise RuntimeError(
                "HttpIndexClient has no session; use 'async with' or pass a session"
            )
        return self.session

    async def get_index_status(self, name: str) -> Optional[IndexStatusSnapshot]:
        """Fetches the status of an index from the control plane"""
        url = f"{self.base_url}/indexes/{quote(name, safe='')}"
        session = self._require_session()

        try:
            async with session.get(url) as response:
                if response.status == 404:
                    return None
                if response.status in (408, 429) or response.status >= 500:
                    raise TransientLookupError(
                        f"HTTP {response.status} from {url}: {response.reason}"
                    )
                response.raise_for_status()
                data = await response.json()
        except aiohttp.ClientResponseError as e:
            raise FatalLookupError(f"HTTP {e.status} from {url}: {e.message}") from e
        except (
            aiohttp.ClientConnectionError,
            aiohttp.ClientPayloadError,
            asyncio.TimeoutError,
        ) as e:
            raise TransientLookupError(f"Could not reach {url}: {e!r}") from e

        snapshot = IndexStatusSnapshot.model_validate(data)
        if snapshot.name != name:
            raise FatalLookupError(
                f"Asked {url} for index '{name}' but got '{snapshot.name}'"
            )
        return snapshot

    async def create_index(self, name: str, definition: Dict[str, Any]) -> bool:
        """Submits an index build; returns False when the index already exists"""
        url = f"{self.base_url}/indexes"
        session = self._require_session()

        try:
            async with session.post(
                url, json={"name": name, "definition": definition}
            ) as response:
                if response.status in (200, 409):
                    self.logger.info(f"Index '{name}' already exists")
                    return False
                response.raise_for_status()
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise

        self.logger.info(f"Index '{name}' build has been submitted")
        return True
