"""
Configuration for the SSE forwarder.

Supports loading configuration from:
- JSON/YAML files (routing table and tuning)
- Environment variables
- Command line arguments
"""

import json
import logging
import os
import random
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ssefwd.errors import ConfigError
from ssefwd.parser import DEFAULT_MAX_LINE_SIZE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.config/fwd/fwd.json"

DECODE_FAILURE_POLICIES = ("empty", "raw", "drop")


@dataclass(frozen=True)
class Route:
    """One relay path from an SSE source to an HTTP target."""

    source: str
    target: str

    def __str__(self) -> str:
        return f"{self.source} -> {self.target}"


@dataclass(frozen=True)
class RestartPolicy:
    """Backoff applied between restarts of a failed subscription."""

    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.3
    # Consecutive failures before a route gives up; None restarts forever
    max_attempts: Optional[int] = None

    def delay_for(self, attempt: int) -> float:
        """
        Delay before restart number ``attempt`` (1-based).

        Exponential backoff capped at ``max_delay`` plus random jitter of up
        to ``jitter`` times the delay.
        """
        attempt = max(attempt, 1)
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts


@dataclass(frozen=True)
class ForwardSettings:
    """HTTP client settings for delivering events to a target."""

    timeout: float = 5.0
    connect_timeout: float = 2.5
    tls_timeout: float = 2.5
    max_connections: int = 10
    decode_failure: str = "empty"
    verify_ssl: bool = True


@dataclass(frozen=True)
class RelaySettings:
    """
    Forwarder configuration, immutable after startup.

    Configuration priority (highest to lowest):
    1. Environment variables (FWD_SOURCE, FWD_TARGET, FWD_DEBUG)
    2. Command line arguments
    3. Configuration file (~/.config/fwd/fwd.json by default)
    4. Default values
    """

    routes: Tuple[Route, ...] = ()
    debug: bool = False

    # Source connection
    read_timeout: Optional[float] = 120.0
    source_connect_timeout: float = 10.0
    max_line_size: int = DEFAULT_MAX_LINE_SIZE
    queue_size: int = 1

    restart: RestartPolicy = field(default_factory=RestartPolicy)
    forward: ForwardSettings = field(default_factory=ForwardSettings)

    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelaySettings":
        """Create settings from a decoded config file."""
        if not isinstance(data, dict):
            raise ConfigError(f"Expected dict, got {type(data).__name__}")

        # Field name -> expected type(s) for validation
        _FIELD_TYPES: Dict[str, Any] = {
            "debug": bool,
            "read_timeout": (int, float),
            "source_connect_timeout": (int, float),
            "max_line_size": int,
            "queue_size": int,
            "log_format": str,
        }

        values: Dict[str, Any] = {}
        for field_name, expected_type in _FIELD_TYPES.items():
            if field_name in data:
                value = data[field_name]
                if value is not None and not isinstance(value, expected_type):
                    raise ConfigError(
                        f"Config field '{field_name}' expected {expected_type}, "
                        f"got {type(value).__name__}"
                    )
                values[field_name] = value

        # Older fwd.json files spell the key "Routes"
        routes = data.get("routes", data.get("Routes")) or {}
        if not isinstance(routes, dict):
            raise ConfigError("Config field 'routes' must map source URLs to targets")
        values["routes"] = tuple(
            Route(source=str(source), target=str(target))
            for source, target in routes.items()
        )

        if "restart" in data:
            values["restart"] = _build(RestartPolicy, data["restart"], "restart")
        if "forward" in data:
            values["forward"] = _build(ForwardSettings, data["forward"], "forward")

        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> "RelaySettings":
        """Load settings from a JSON or YAML file."""
        file_path = Path(path).expanduser()

        if not file_path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(file_path, "r") as f:
                if file_path.suffix in [".yaml", ".yml"]:
                    try:
                        import yaml
                    except ImportError:
                        raise ConfigError(
                            "PyYAML is required to load YAML config files"
                        )
                    try:
                        data = yaml.safe_load(f)
                    except yaml.YAMLError as e:
                        raise ConfigError(f"Error parsing {path}: {e}") from e
                else:
                    data = json.load(f)
        except ConfigError:
            raise
        except (OSError, ValueError) as e:
            raise ConfigError(f"Error reading {path}: {e}") from e

        return cls.from_dict(data or {})

    @classmethod
    def load(
        cls,
        config_path: Optional[str] = None,
        source: Optional[str] = None,
        target: Optional[str] = None,
        debug: bool = False,
    ) -> "RelaySettings":
        """
        Load settings with proper precedence.

        The default config path may be absent; an explicit one must exist.
        A single source/target pair is merged into the file's routing table.
        """
        config_path = config_path or os.environ.get("FWD_CONFIG") or DEFAULT_CONFIG_PATH

        if config_path == DEFAULT_CONFIG_PATH and not Path(config_path).expanduser().exists():
            logger.debug(f"No config file at {config_path}, using defaults")
            settings = cls()
        else:
            settings = cls.from_file(config_path)

        source = os.environ.get("FWD_SOURCE") or source
        target = os.environ.get("FWD_TARGET") or target

        env_debug = os.environ.get("FWD_DEBUG")
        if env_debug:
            debug = _parse_bool(env_debug)
        debug = debug or settings.debug

        routes = list(settings.routes)
        if source and target:
            routes.insert(0, Route(source=source, target=target))

        return replace(settings, routes=_unique(routes), debug=debug)

    def with_routes(self, routes: List[Route]) -> "RelaySettings":
        return replace(self, routes=_unique(routes))

    def validate(self) -> List[str]:
        """
        Validate settings.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for route in self.routes:
            for name, url in (("source", route.source), ("target", route.target)):
                parsed = urlparse(url)
                if parsed.scheme not in ("http", "https") or not parsed.netloc:
                    errors.append(f"route {name} must be an http(s) URL, got '{url}'")

        if self.read_timeout is not None and self.read_timeout <= 0:
            errors.append("read_timeout must be positive")

        if self.source_connect_timeout <= 0:
            errors.append("source_connect_timeout must be positive")

        if self.max_line_size <= 0:
            errors.append("max_line_size must be positive")

        if self.queue_size < 1:
            errors.append("queue_size must be at least 1")

        if self.restart.initial_delay < 0:
            errors.append("restart.initial_delay must not be negative")

        if self.restart.max_delay < self.restart.initial_delay:
            errors.append("restart.max_delay must be >= restart.initial_delay")

        if self.restart.max_attempts is not None and self.restart.max_attempts < 1:
            errors.append("restart.max_attempts must be at least 1")

        for name in ("timeout", "connect_timeout", "tls_timeout"):
            if getattr(self.forward, name) <= 0:
                errors.append(f"forward.{name} must be positive")

        if self.forward.max_connections < 1:
            errors.append("forward.max_connections must be at least 1")

        if self.forward.decode_failure not in DECODE_FAILURE_POLICIES:
            errors.append(
                f"forward.decode_failure must be one of {', '.join(DECODE_FAILURE_POLICIES)}, "
                f"got '{self.forward.decode_failure}'"
            )

        return errors


def _build(cls, data: Any, name: str):
    if not isinstance(data, dict):
        raise ConfigError(f"Config field '{name}' must be an object")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid '{name}' settings: {e}") from e


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "t", "true", "y", "yes", "on")


def _unique(routes: List[Route]) -> Tuple[Route, ...]:
    seen = set()
    result = []
    for route in routes:
        if route not in seen:
            seen.add(route)
            result.append(route)
    return tuple(result)
