"""
Exception hierarchy for the SSE forwarder.

Subscription errors are fatal to a single source connection and make the
supervisor reconnect. Forward errors and payload decode errors are handled
inside the forwarder and never stop a route.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all forwarder errors."""


class ConfigError(RelayError):
    """Configuration could not be loaded or is invalid."""


class ChannelError(RelayError):
    """A new source channel could not be allocated."""


class SubscriptionError(RelayError):
    """Source stream failed; the subscription must be restarted."""


class ConnectError(SubscriptionError):
    """Connection to the source could not be established."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"cannot connect to {url}: {reason}")
        self.url = url
        self.reason = reason


class HTTPStatusError(SubscriptionError):
    """Source answered with a status other than 200."""

    def __init__(self, url: str, status: int):
        super().__init__(f"unexpected status {status} from {url}")
        self.url = url
        self.status = status


class ContentTypeError(SubscriptionError):
    """Source answered with a content type other than text/event-stream."""

    def __init__(self, url: str, content_type: Optional[str]):
        super().__init__(f"invalid Content-Type {content_type!r} from {url}")
        self.url = url
        self.content_type = content_type


class ParseError(SubscriptionError):
    """A line of the event stream is not part of the accepted protocol."""

    def __init__(self, line: bytes, message: Optional[str] = None):
        self.line = line
        self.length = len(line)
        if message is None:
            message = f"unrecognized stream line (len={self.length}): {line[:200]!r}"
        super().__init__(message)


class LineTooLongError(ParseError):
    """A single line exceeded the configured maximum size."""

    def __init__(self, line: bytes, limit: int):
        self.limit = limit
        super().__init__(
            line, f"stream line exceeds {limit} bytes (got at least {len(line)})"
        )


class StreamReadError(SubscriptionError):
    """Reading from an accepted stream failed or timed out."""


class StreamClosedError(StreamReadError):
    """The source closed the stream."""


class ForwardError(RelayError):
    """Delivery of one event to the target failed."""


class ForwardSendError(ForwardError):
    """Target could not be reached."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"sending to {target} failed: {reason}")
        self.target = target
        self.reason = reason


class ForwardStatusError(ForwardError):
    """Target answered with a non-2xx status."""

    def __init__(self, target: str, status: int, body: str = ""):
        super().__init__(f"target {target} responded with status {status}")
        self.target = target
        self.status = status
        self.body = body


class PayloadDecodeError(RelayError):
    """Event data is not a JSON payload object."""
