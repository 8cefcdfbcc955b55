"""
SSE forwarder.

Relays events published on server-sent-event channels (such as smee.io)
to HTTP endpoints, one independent route per source/target pair.

Usage:
    # As a module
    python -m ssefwd --source https://smee.io/abc --target http://localhost:3000/hook

    # Programmatically
    from ssefwd import RelaySettings, RouteSupervisor

    settings = RelaySettings.load("fwd.json")
    supervisor = RouteSupervisor(settings)
    await supervisor.serve()
"""

from ssefwd.__version__ import __version__

# Only import modules without external dependencies eagerly
from ssefwd.config import ForwardSettings, RelaySettings, RestartPolicy, Route
from ssefwd.parser import Event, StreamParser


# Lazy imports for components that require aiohttp or httpx
def __getattr__(name):
    """Lazy import for the networking components."""
    if name == "Subscription":
        from ssefwd.subscription import Subscription

        return Subscription
    elif name in ("Forwarder", "Payload", "ForwardResult"):
        from ssefwd.forwarder import Forwarder, ForwardResult, Payload

        return {
            "Forwarder": Forwarder,
            "Payload": Payload,
            "ForwardResult": ForwardResult,
        }[name]
    elif name in ("RouteSupervisor", "RouteState"):
        from ssefwd.supervisor import RouteState, RouteSupervisor

        return {"RouteSupervisor": RouteSupervisor, "RouteState": RouteState}[name]
    elif name == "create_channel":
        from ssefwd.channel import create_channel

        return create_channel
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "Event",
    "StreamParser",
    "Route",
    "RestartPolicy",
    "ForwardSettings",
    "RelaySettings",
    "Subscription",
    "Forwarder",
    "Payload",
    "ForwardResult",
    "RouteSupervisor",
    "RouteState",
    "create_channel",
]
