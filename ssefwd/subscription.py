"""
Subscription to an SSE source.

Holds one streaming GET request open against the source URL, parses the
body line by line and publishes every completed Event, in wire order, to
the owning forwarder's intake queue.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
from aiohttp import ClientSession

from ssefwd.config import RelaySettings
from ssefwd.errors import (
    ConnectError,
    ContentTypeError,
    HTTPStatusError,
    StreamClosedError,
    StreamReadError,
)
from ssefwd.parser import Event, LineReader, StreamParser
from ssefwd.utils import wait_unless_stopped

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"


class Subscription:
    """
    One connection to an SSE source.

    ``serve()`` returns normally only after ``stop()``; every other exit
    raises a SubscriptionError and the caller decides whether to reconnect.
    A Subscription is single use, create a new one for each connection.
    """

    def __init__(
        self,
        url: str,
        intake: "asyncio.Queue[Event]",
        settings: Optional[RelaySettings] = None,
        on_connect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        """
        Initialize subscription.

        Args:
            url: SSE source URL
            intake: Queue receiving completed events
            settings: Relay settings (timeouts, line size limit)
            on_connect: Optional callback once the stream is accepted
        """
        self.url = url
        self.intake = intake
        self.settings = settings or RelaySettings()
        self.on_connect = on_connect

        self.parser = StreamParser()
        self.events_published = 0
        self.connected = False
        self._stop_event = asyncio.Event()
        self._session: Optional[ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _create_session(self) -> ClientSession:
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.settings.source_connect_timeout,
            sock_read=self.settings.read_timeout,
        )
        return aiohttp.ClientSession(timeout=timeout)

    async def serve(self) -> None:
        """
        Connect and stream events until stopped or the stream fails.

        Raises:
            ConnectError: Source unreachable
            HTTPStatusError: Status other than 200
            ContentTypeError: Content type other than text/event-stream
            ParseError: Unrecognized line or line too long
            StreamReadError: Read failure, idle timeout or end of stream
        """
        if self.stopped:
            return

        headers = {"Accept": EVENT_STREAM, "Cache-Control": "no-cache"}
        self._session = self._create_session()

        try:
            try:
                response = await self._session.get(self.url, headers=headers)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if self.stopped:
                    return
                raise ConnectError(self.url, str(e) or type(e).__name__) from e

            self._response = response
            if self.stopped:
                return

            if response.status != 200:
                raise HTTPStatusError(self.url, response.status)

            content_type = response.headers.get("Content-Type")
            if content_type != EVENT_STREAM:
                raise ContentTypeError(self.url, content_type)

            self.connected = True
            logger.info(f"SSE connected to {self.url}")
            if self.on_connect:
                await self.on_connect()

            await self._read_loop(response)
        finally:
            await self._release()

    async def _read_loop(self, response: aiohttp.ClientResponse) -> None:
        """Feed the response body through the parser."""
        reader = LineReader(self.settings.max_line_size)

        try:
            async for chunk in response.content.iter_any():
                if self.stopped:
                    return
                for line in reader.feed(chunk):
                    # Stop is observed between lines, never inside one
                    if self.stopped:
                        return
                    event = self.parser.feed(line)
                    if event is not None:
                        await self._publish(event)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if self.stopped:
                return
            reason = str(e) or type(e).__name__
            raise StreamReadError(f"error reading {self.url}: {reason}") from e

        if self.stopped:
            return
        raise StreamClosedError(f"{self.url} closed the stream")

    async def _publish(self, event: Event) -> None:
        """Hand an event to the intake, waiting for room unless stopped."""
        if self.stopped:
            return

        if not self.intake.full():
            self.intake.put_nowait(event)
            self.events_published += 1
            return

        accepted, _ = await wait_unless_stopped(
            self.intake.put(event), self._stop_event
        )
        if accepted:
            self.events_published += 1

    async def stop(self) -> None:
        """
        Stop streaming.

        Safe to call while ``serve()`` is running, after it has exited, or
        more than once. The response is released exactly once across both
        paths.
        """
        if not self.stopped:
            logger.debug(f"Stopping subscription to {self.url}")
        self._stop_event.set()
        await self._release()

    async def _release(self) -> None:
        # Take ownership before awaiting so concurrent callers never both close
        response, self._response = self._response, None
        session, self._session = self._session, None

        if response is not None:
            response.close()
        if session is not None and not session.closed:
            await session.close()
