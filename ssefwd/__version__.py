"""Version information for the SSE forwarder."""

__version__ = "0.3.0"
