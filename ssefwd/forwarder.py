"""
Event forwarder for one route.

Handles relaying of received events:
- Filtering of heartbeats and events without a usable id
- Payload decoding into body and provider headers
- Delivery to the route target with bounded timeouts
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from json.decoder import scanstring
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from aiohttp import ClientSession

from ssefwd.config import RelaySettings, Route
from ssefwd.errors import (
    ForwardError,
    ForwardSendError,
    ForwardStatusError,
    PayloadDecodeError,
)
from ssefwd.parser import Event
from ssefwd.subscription import Subscription
from ssefwd.utils import wait_unless_stopped

logger = logging.getLogger(__name__)

PING_EVENT = "ping"
UNSET_EVENT_IDS = ("", "0")

# Payload keys copied verbatim onto the outbound request
FORWARDED_HEADERS = (
    "content-type",
    "x-request-id",
    "x-github-delivery",
    "x-github-event",
    "x-hub-signature",
    "x-hub-signature-256",
)


def should_forward(event: Event) -> bool:
    """Heartbeats and events without an initialized id are never relayed."""
    if event.name == PING_EVENT:
        return False
    return event.id not in UNSET_EVENT_IDS


@dataclass
class Payload:
    """Webhook delivery as published on the channel."""

    headers: Dict[str, str] = field(
        default_factory=lambda: {name: "" for name in FORWARDED_HEADERS}
    )
    body: bytes = b""
    timestamp: int = 0

    # Informational request metadata, never forwarded
    host: str = ""
    connection: str = ""
    user_agent: str = ""
    accept_encoding: str = ""
    accept: str = ""

    @classmethod
    def decode(cls, data: bytes) -> "Payload":
        """
        Decode event data.

        Keys are matched case-insensitively. ``body`` is kept as the exact
        JSON text found in the event, so signatures over it stay valid.

        Raises:
            PayloadDecodeError: If data is not a UTF-8 JSON object
        """
        try:
            text = data.decode("utf-8")
            decoded = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            raise PayloadDecodeError(f"invalid JSON: {e}") from e
        except RecursionError as e:
            raise PayloadDecodeError("invalid JSON: nested too deeply") from e

        if not isinstance(decoded, dict):
            raise PayloadDecodeError(
                f"expected JSON object, got {type(decoded).__name__}"
            )

        fields = {str(key).lower(): value for key, value in decoded.items()}

        headers = {name: _as_str(fields.get(name)) for name in FORWARDED_HEADERS}

        if fields.get("body") is None:
            raw_body = b""
        else:
            raw_body = _raw_member(text, "body").encode("utf-8")

        try:
            timestamp = int(fields.get("timestamp") or 0)
        except (TypeError, ValueError):
            timestamp = 0

        return cls(
            headers=headers,
            body=raw_body,
            timestamp=timestamp,
            host=_as_str(fields.get("host")),
            connection=_as_str(fields.get("connection")),
            user_agent=_as_str(fields.get("user-agent")),
            accept_encoding=_as_str(fields.get("accept-encoding")),
            accept=_as_str(fields.get("accept")),
        )


_WHITESPACE = re.compile(r"[ \t\n\r]*")


def _raw_member(text: str, name: str) -> str:
    """
    Source text of the last top-level member called ``name`` (any case).

    ``text`` must already be known to hold a valid JSON object.
    """
    decoder = json.JSONDecoder()
    raw = ""
    idx = _WHITESPACE.match(text, 0).end() + 1  # past "{"
    while True:
        idx = _WHITESPACE.match(text, idx).end()
        if text[idx] == "}":
            return raw
        key, idx = scanstring(text, idx + 1)
        idx = _WHITESPACE.match(text, idx).end() + 1  # past ":"
        start = _WHITESPACE.match(text, idx).end()
        _, idx = decoder.raw_decode(text, start)
        if key.lower() == name:
            raw = text[start:idx]
        idx = _WHITESPACE.match(text, idx).end()
        if text[idx] == "}":
            return raw
        idx += 1  # past ","


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


@dataclass
class ForwardResult:
    """Result of handling one event."""

    event_id: str
    forwarded: bool
    skipped: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class ForwardStats:
    """Statistics for one forwarder."""

    events_received: int = 0
    events_skipped: int = 0
    events_forwarded: int = 0
    events_failed: int = 0
    decode_errors: int = 0


class Forwarder:
    """
    Relays one route's events to its target.

    Events arrive on ``intake`` from the current Subscription and are sent
    one at a time, in order. Delivery is at most once: a failed send is
    logged and the next event is processed.
    """

    def __init__(self, route: Route, settings: Optional[RelaySettings] = None):
        """
        Initialize forwarder.

        Args:
            route: Source and target of this forwarder
            settings: Relay settings shared by all routes
        """
        self.route = route
        self.settings = settings or RelaySettings()
        self.intake: "asyncio.Queue[Event]" = asyncio.Queue(
            maxsize=self.settings.queue_size
        )

        self.subscription: Optional[Subscription] = None
        self._session: Optional[ClientSession] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._stats = ForwardStats()
        self._running = False

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def _create_session(self) -> ClientSession:
        forward = self.settings.forward
        timeout = aiohttp.ClientTimeout(
            total=forward.timeout,
            # connect covers TCP connect plus the TLS handshake
            connect=forward.connect_timeout + forward.tls_timeout,
            sock_connect=forward.connect_timeout,
        )
        connector = aiohttp.TCPConnector(
            limit=forward.max_connections, ssl=forward.verify_ssl
        )
        return aiohttp.ClientSession(timeout=timeout, connector=connector)

    async def start(self) -> None:
        """Open the HTTP client and start draining the intake."""
        if self._running or self.stopped:
            return

        logger.info(f"Forwarder for {self.route.source} to {self.route.target}")
        self._session = self._create_session()
        self._running = True
        self._drain_task = asyncio.create_task(self._drain())

    def subscribe(
        self, on_connect: Optional[Callable[[], Awaitable[None]]] = None
    ) -> Subscription:
        """Create a fresh Subscription feeding this forwarder."""
        self.subscription = Subscription(
            self.route.source, self.intake, self.settings, on_connect=on_connect
        )
        return self.subscription

    async def stop(self) -> None:
        """Stop the subscription, finish the current delivery and close."""
        self._stop_event.set()

        if self.subscription:
            await self.subscription.stop()

        if self._drain_task:
            await self._drain_task
            self._drain_task = None

        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

        if self._running:
            logger.info(f"Forwarder for {self.route.source} stopped")
        self._running = False

    async def _drain(self) -> None:
        """Forward queued events until stopped."""
        while not self.stopped:
            received, event = await wait_unless_stopped(
                self.intake.get(), self._stop_event
            )
            if not received:
                break
            try:
                await self.forward(event)
            except Exception:
                self._stats.events_failed += 1
                logger.exception(f"Unexpected error forwarding event {event.id}")

    async def forward(self, event: Event) -> ForwardResult:
        """
        Relay a single event to the target.

        Never raises for delivery problems; the outcome is reported in the
        returned ForwardResult.
        """
        self._stats.events_received += 1

        if not should_forward(event):
            logger.debug(f"Skipping received event: {event.format()}")
            self._stats.events_skipped += 1
            return ForwardResult(event_id=event.id, forwarded=False, skipped=True)

        logger.info(f"Received event: {event.format()}")

        try:
            payload = Payload.decode(event.data)
        except PayloadDecodeError as e:
            self._stats.decode_errors += 1
            policy = self.settings.forward.decode_failure
            logger.warning(
                f"Undecodable payload in event {event.id}: {e} (policy={policy})"
            )
            if policy == "drop":
                self._stats.events_skipped += 1
                return ForwardResult(
                    event_id=event.id, forwarded=False, skipped=True, error=str(e)
                )
            payload = Payload(body=event.data) if policy == "raw" else Payload()

        start_time = datetime.now(timezone.utc)
        try:
            status_code = await self._send(payload)
        except ForwardError as e:
            self._stats.events_failed += 1
            logger.warning(f"Failed to forward event {event.id}: {e}")
            return ForwardResult(
                event_id=event.id,
                forwarded=False,
                status_code=getattr(e, "status", None),
                error=str(e),
            )
        duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        self._stats.events_forwarded += 1
        logger.debug(
            f"Forwarded event {event.id} to {self.route.target} "
            f"(status={status_code}, {duration:.0f}ms)"
        )
        return ForwardResult(
            event_id=event.id,
            forwarded=True,
            status_code=status_code,
            duration_ms=duration,
        )

    async def _send(self, payload: Payload) -> int:
        """
        POST the payload body to the target.

        Raises:
            ForwardSendError: Target unreachable or request timed out
            ForwardStatusError: Target answered with a non-2xx status
        """
        target = self.route.target
        if self._session is None:
            raise ForwardSendError(target, "forwarder is not started")

        try:
            async with self._session.post(
                target, data=payload.body, headers=payload.headers
            ) as response:
                if not 200 <= response.status < 300:
                    body = await response.text(errors="replace")
                    logger.debug(f"response code {response.status}: {body}")
                    raise ForwardStatusError(target, response.status, body)
                return response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ForwardSendError(target, str(e) or type(e).__name__) from e
        except ValueError as e:
            # aiohttp rejects header values carrying CR/LF
            raise ForwardSendError(target, f"invalid request: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        """Get forwarding statistics."""
        return {
            "events_received": self._stats.events_received,
            "events_skipped": self._stats.events_skipped,
            "events_forwarded": self._stats.events_forwarded,
            "events_failed": self._stats.events_failed,
            "decode_errors": self._stats.decode_errors,
            "queued": self.intake.qsize(),
            "running": self._running,
        }
