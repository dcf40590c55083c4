"""Server-sent events transport for the realtime stream."""

import asyncio
import codecs
from typing import AsyncIterator, Dict, List, Optional

import aiohttp

from ..utils.errors import ConnectionError, NetworkError
from ..utils.logging import get_logger
from .base import RealtimeConnection, RealtimeTransport, StreamMessage

logger = get_logger("zuno.transport.sse")


class SSEDecoder:
    """
    Incremental decoder for the text/event-stream format.

    Feed it arbitrary text chunks; it returns complete messages. Comment
    lines (heartbeats) are counted and otherwise ignored.
    """

    def __init__(self):
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._event_id: Optional[int] = None
        self.last_event_id: Optional[int] = None
        self.retry_ms: Optional[int] = None
        self.comment_count = 0

    def feed(self, chunk: str) -> List[StreamMessage]:
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        messages = []

        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            message = self._process_line(line)
            if message is not None:
                messages.append(message)

        return messages

    def _process_line(self, line: str) -> Optional[StreamMessage]:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            self.comment_count += 1
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            try:
                self._event_id = int(value)
            except ValueError:
                logger.warning("sse_invalid_event_id", value=value)
        elif name == "retry":
            try:
                self.retry_ms = int(value)
            except ValueError:
                pass

        return None

    def _dispatch(self) -> Optional[StreamMessage]:
        if self._event_id is not None:
            self.last_event_id = self._event_id

        if not self._data:
            self._event = None
            self._event_id = None
            return None

        message = StreamMessage(
            event=self._event or "message",
            data="\n".join(self._data),
            event_id=self._event_id,
        )
        self._event = None
        self._data = []
        self._event_id = None
        return message


class SSEConnection(RealtimeConnection):
    """An open SSE response."""

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response
        self._decoder = SSEDecoder()
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def messages(self) -> AsyncIterator[StreamMessage]:
        try:
            async for chunk in self._response.content.iter_any():
                for message in self._decoder.feed(self._text.decode(chunk)):
                    yield message
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"SSE stream lost: {e}", cause=e) from e

    async def close(self) -> None:
        self._response.close()


class SSETransport(RealtimeTransport):
    """
    Opens SSE streams with aiohttp.

    The resume cursor is sent both as a ``Last-Event-ID`` header and as a
    ``lastEventId`` query parameter.
    """

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 30.0,
    ):
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # no total timeout: the stream is long-lived
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
            )
            self._owns_session = True
        return self._session

    async def connect(self, last_event_id: int = 0) -> RealtimeConnection:
        headers = {"Accept": "text/event-stream", **self.headers}
        params = {}
        if last_event_id > 0:
            headers["Last-Event-ID"] = str(last_event_id)
            params["lastEventId"] = str(last_event_id)

        logger.debug("sse_connecting", url=self.url, last_event_id=last_event_id)
        try:
            response = await self._get_session().get(self.url, headers=headers, params=params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"Failed to connect SSE: {e}", cause=e) from e

        if response.status != 200:
            text = await response.text()
            response.release()
            raise NetworkError(f"SSE endpoint returned HTTP {response.status}: {text[:200]}")

        return SSEConnection(response)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def __repr__(self) -> str:
        return f"SSETransport(url={self.url})"


__all__ = ['SSEDecoder', 'SSEConnection', 'SSETransport']
