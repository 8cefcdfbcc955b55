"""
Route supervision.

Runs one Forwarder per configured route and one supervisory task per route
that reconnects the route's Subscription after failures, with exponential
backoff and jitter. Routes never share state, so a failing source only
delays its own route.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from ssefwd.config import RelaySettings, Route
from ssefwd.errors import SubscriptionError
from ssefwd.forwarder import Forwarder
from ssefwd.utils import wait_unless_stopped

logger = logging.getLogger(__name__)


class RouteState(Enum):
    """Route state enumeration."""

    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class RouteStatus:
    """Supervision bookkeeping for one route."""

    route: Route
    state: RouteState = RouteState.STARTING
    restarts: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class RouteSupervisor:
    """
    Owns every Forwarder and restarts failed subscriptions.

    A route moves STARTING -> RUNNING once its source stream is accepted.
    A subscription failure moves it to FAILED and schedules a restart; a stop
    moves it to STOPPED and it is not restarted.
    """

    def __init__(self, settings: RelaySettings, routes: Optional[Iterable[Route]] = None):
        """
        Initialize the supervisor.

        Args:
            settings: Relay settings; its routes are added unless ``routes``
                is given
            routes: Explicit routes to supervise
        """
        self.settings = settings
        self.forwarders: Dict[Route, Forwarder] = {}
        self._status: Dict[Route, RouteStatus] = {}
        self._tasks: Dict[Route, asyncio.Task] = {}
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self._running = False

        for route in settings.routes if routes is None else routes:
            self.add(route)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def add(self, route: Route) -> Forwarder:
        """Register a route; a duplicate returns the existing Forwarder."""
        if route in self.forwarders:
            return self.forwarders[route]

        forwarder = Forwarder(route, self.settings)
        self.forwarders[route] = forwarder
        self._status[route] = RouteStatus(route=route)

        if self._running:
            self._tasks[route] = asyncio.create_task(self._launch(route))
        return forwarder

    async def start(self) -> None:
        """Start every registered route."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._stopped.clear()
        logger.info(f"{len(self.forwarders)} routes loaded")

        for route in list(self.forwarders):
            self._tasks[route] = asyncio.create_task(self._launch(route))

    async def serve(self) -> None:
        """Start all routes and block until ``stop()`` has completed."""
        await self.start()
        await self._stopped.wait()

    async def _launch(self, route: Route) -> None:
        await self.forwarders[route].start()
        await self._supervise(route)

    async def _supervise(self, route: Route) -> None:
        """Keep the route's subscription alive until the route is stopped."""
        forwarder = self.forwarders[route]
        status = self._status[route]
        policy = self.settings.restart

        async def on_connect() -> None:
            status.state = RouteState.RUNNING
            status.consecutive_failures = 0

        while not self.stopping and not forwarder.stopped:
            status.state = RouteState.STARTING
            subscription = forwarder.subscribe(on_connect=on_connect)

            try:
                await subscription.serve()
            except SubscriptionError as e:
                error: Exception = e
            except Exception as e:
                logger.exception(f"Unexpected error on route {route}")
                error = e
            else:
                # serve() only returns normally after a cooperative stop
                break

            if self.stopping or forwarder.stopped:
                break

            status.state = RouteState.FAILED
            status.last_error = str(error)
            status.consecutive_failures += 1

            if policy.exhausted(status.consecutive_failures):
                logger.error(
                    f"Route {route} failed {status.consecutive_failures} times "
                    f"in a row, giving up: {error}"
                )
                await forwarder.stop()
                return

            delay = policy.delay_for(status.consecutive_failures)
            logger.warning(f"Route {route} failed: {error}")
            logger.info(f"Restarting {route.source} in {delay:.1f} seconds...")

            slept, _ = await wait_unless_stopped(
                asyncio.sleep(delay), forwarder.stop_event
            )
            if not slept:
                break
            status.restarts += 1

        status.state = RouteState.STOPPED

    async def stop_route(self, route: Route) -> None:
        """Stop a single route without touching the others."""
        forwarder = self.forwarders.get(route)
        if forwarder is None:
            return

        await forwarder.stop()
        task = self._tasks.pop(route, None)
        if task:
            await task
        self._status[route].state = RouteState.STOPPED

    async def stop(self) -> None:
        """Stop every route and wait until each released its connection."""
        if not self._running:
            return

        logger.info("Stopping all routes...")
        self._stop_event.set()

        results = await asyncio.gather(
            *(forwarder.stop() for forwarder in self.forwarders.values()),
            return_exceptions=True,
        )
        for route, result in zip(list(self.forwarders), results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping route {route}: {result}")

        tasks = list(self._tasks.values())
        self._tasks.clear()
        if tasks:
            for result in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.error(f"Route task ended with error: {result}")

        for status in self._status.values():
            status.state = RouteState.STOPPED

        self._running = False
        self._stopped.set()
        logger.info("All routes stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Get per-route supervision status."""
        return {
            str(route): {
                "state": status.state.value,
                "restarts": status.restarts,
                "consecutive_failures": status.consecutive_failures,
                "last_error": status.last_error,
                "forwarder": self.forwarders[route].get_stats(),
            }
            for route, status in self._status.items()
        }

    def route_status(self, route: Route) -> RouteStatus:
        return self._status[route]
