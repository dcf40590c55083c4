"""HTTP transport for the sync write and snapshot endpoints."""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from ..events import StateEvent, SyncResponse
from ..utils.errors import ConnectionError, TimeoutError, TransportError
from ..utils.logging import get_logger
from .base import SyncTransport

logger = get_logger("zuno.transport.http")


class HttpSyncTransport(SyncTransport):
    """Posts events to the sync endpoint with aiohttp."""

    def __init__(
        self,
        sync_url: str,
        snapshot_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        self.sync_url = sync_url
        self.snapshot_url = snapshot_url
        self.headers = headers or {}
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def publish(self, event: StateEvent) -> SyncResponse:
        payload = event.to_dict()
        try:
            async with self._get_session().post(
                self.sync_url,
                json=payload,
                headers=self.headers,
            ) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Sync request timed out after {self.timeout}s", cause=e) from e
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Sync request failed: {e}", cause=e) from e

        try:
            body = json.loads(text) if text else None
        except json.JSONDecodeError:
            logger.warning("sync_response_not_json", status=status, body=text[:200])
            body = None

        logger.debug("sync_response", store_key=event.store_key, status=status)
        return SyncResponse(status, body)

    async def fetch_snapshot(self) -> Dict[str, Any]:
        if not self.snapshot_url:
            raise TransportError("No snapshot_url configured")

        try:
            async with self._get_session().get(self.snapshot_url, headers=self.headers) as response:
                if response.status != 200:
                    raise TransportError(f"Snapshot endpoint returned HTTP {response.status}")
                return await response.json()
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Snapshot request timed out after {self.timeout}s", cause=e) from e
        except aiohttp.ContentTypeError as e:
            raise TransportError(f"Snapshot response is not JSON: {e}", cause=e) from e
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Snapshot request failed: {e}", cause=e) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def __repr__(self) -> str:
        return f"HttpSyncTransport(sync_url={self.sync_url})"


__all__ = ['HttpSyncTransport']
