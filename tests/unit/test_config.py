"""Tests for ssefwd/config.py: Route, RestartPolicy, RelaySettings."""

import json
from dataclasses import FrozenInstanceError

import pytest

from ssefwd.config import (
    DEFAULT_CONFIG_PATH,
    ForwardSettings,
    RelaySettings,
    RestartPolicy,
    Route,
)
from ssefwd.errors import ConfigError


SOURCE = "https://smee.io/abc123"
TARGET = "http://localhost:3000/webhook"


class TestRoute:
    """Tests for Route."""

    def test_route_is_immutable(self):
        route = Route(source=SOURCE, target=TARGET)

        with pytest.raises(FrozenInstanceError):
            route.target = "http://elsewhere"

    def test_routes_are_hashable_and_equal_by_value(self):
        assert Route(SOURCE, TARGET) == Route(SOURCE, TARGET)
        assert len({Route(SOURCE, TARGET), Route(SOURCE, TARGET)}) == 1

    def test_str(self):
        assert str(Route(SOURCE, TARGET)) == f"{SOURCE} -> {TARGET}"


class TestRestartPolicy:
    """Tests for RestartPolicy backoff."""

    def test_exponential_backoff_without_jitter(self):
        policy = RestartPolicy(initial_delay=1.0, backoff_multiplier=2.0, jitter=0.0)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_capped(self):
        policy = RestartPolicy(initial_delay=1.0, max_delay=5.0, jitter=0.0)

        assert policy.delay_for(10) == 5.0

    def test_jitter_bounds(self):
        """Jitter adds at most jitter * delay."""
        policy = RestartPolicy(initial_delay=2.0, jitter=0.5)

        for _ in range(50):
            delay = policy.delay_for(1)
            assert 2.0 <= delay <= 3.0

    def test_attempt_below_one_treated_as_first(self):
        policy = RestartPolicy(initial_delay=1.5, jitter=0.0)
        assert policy.delay_for(0) == 1.5

    def test_unbounded_by_default(self):
        assert RestartPolicy().exhausted(10_000) is False

    def test_max_attempts(self):
        policy = RestartPolicy(max_attempts=3)

        assert policy.exhausted(3) is False
        assert policy.exhausted(4) is True


class TestRelaySettingsDefaults:
    """Tests for default values."""

    def test_defaults(self):
        settings = RelaySettings()

        assert settings.routes == ()
        assert settings.debug is False
        assert settings.read_timeout == 120.0
        assert settings.max_line_size == 512 * 1024
        assert settings.queue_size == 1

    def test_forward_defaults(self):
        forward = ForwardSettings()

        assert forward.timeout == 5.0
        assert forward.connect_timeout == 2.5
        assert forward.tls_timeout == 2.5
        assert forward.decode_failure == "empty"

    def test_settings_immutable(self):
        with pytest.raises(FrozenInstanceError):
            RelaySettings().debug = True


class TestRelaySettingsFromDict:
    """Tests for RelaySettings.from_dict."""

    def test_routes(self):
        settings = RelaySettings.from_dict(
            {"routes": {SOURCE: TARGET, "https://smee.io/x": "http://t2"}}
        )

        assert settings.routes == (
            Route(SOURCE, TARGET),
            Route("https://smee.io/x", "http://t2"),
        )

    def test_capitalized_routes_key(self):
        """Older fwd.json files spell the key "Routes"."""
        settings = RelaySettings.from_dict({"Routes": {SOURCE: TARGET}})

        assert settings.routes == (Route(SOURCE, TARGET),)

    def test_nested_settings(self):
        settings = RelaySettings.from_dict(
            {
                "read_timeout": 30,
                "restart": {"initial_delay": 0.5, "max_attempts": 4},
                "forward": {"timeout": 2.0, "decode_failure": "raw"},
            }
        )

        assert settings.read_timeout == 30
        assert settings.restart.initial_delay == 0.5
        assert settings.restart.max_attempts == 4
        assert settings.forward.timeout == 2.0
        assert settings.forward.decode_failure == "raw"

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigError, match="read_timeout"):
            RelaySettings.from_dict({"read_timeout": "soon"})

    def test_routes_must_be_mapping(self):
        with pytest.raises(ConfigError, match="routes"):
            RelaySettings.from_dict({"routes": [SOURCE, TARGET]})

    def test_unknown_nested_key_rejected(self):
        with pytest.raises(ConfigError, match="restart"):
            RelaySettings.from_dict({"restart": {"bogus": 1}})

    def test_not_a_dict(self):
        with pytest.raises(ConfigError):
            RelaySettings.from_dict(["routes"])


class TestRelaySettingsFromFile:
    """Tests for RelaySettings.from_file."""

    def test_json_file(self, tmp_path):
        config_file = tmp_path / "fwd.json"
        config_file.write_text(json.dumps({"routes": {SOURCE: TARGET}}))

        settings = RelaySettings.from_file(str(config_file))

        assert settings.routes == (Route(SOURCE, TARGET),)

    def test_yaml_file(self, tmp_path):
        pytest.importorskip("yaml")
        config_file = tmp_path / "fwd.yaml"
        config_file.write_text(f"routes:\n  {SOURCE}: {TARGET}\ndebug: true\n")

        settings = RelaySettings.from_file(str(config_file))

        assert settings.routes == (Route(SOURCE, TARGET),)
        assert settings.debug is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            RelaySettings.from_file(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "fwd.json"
        config_file.write_text("{not json")

        with pytest.raises(ConfigError, match="Error reading"):
            RelaySettings.from_file(str(config_file))

    def test_empty_file_gives_defaults(self, tmp_path):
        pytest.importorskip("yaml")
        config_file = tmp_path / "fwd.yml"
        config_file.write_text("")

        assert RelaySettings.from_file(str(config_file)) == RelaySettings()


class TestRelaySettingsLoad:
    """Tests for RelaySettings.load precedence."""

    def test_missing_default_path_is_not_an_error(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))

        settings = RelaySettings.load(source=SOURCE, target=TARGET)

        assert settings.routes == (Route(SOURCE, TARGET),)

    def test_explicit_missing_path_is_an_error(self, tmp_path):
        with pytest.raises(ConfigError):
            RelaySettings.load(config_path=str(tmp_path / "missing.json"))

    def test_single_route_merged_with_table(self, tmp_path):
        config_file = tmp_path / "fwd.json"
        config_file.write_text(json.dumps({"routes": {"https://smee.io/b": "http://b"}}))

        settings = RelaySettings.load(str(config_file), source=SOURCE, target=TARGET)

        assert settings.routes == (
            Route(SOURCE, TARGET),
            Route("https://smee.io/b", "http://b"),
        )

    def test_duplicate_routes_collapse(self, tmp_path):
        config_file = tmp_path / "fwd.json"
        config_file.write_text(json.dumps({"routes": {SOURCE: TARGET}}))

        settings = RelaySettings.load(str(config_file), source=SOURCE, target=TARGET)

        assert settings.routes == (Route(SOURCE, TARGET),)

    def test_source_without_target_adds_no_route(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))

        assert RelaySettings.load(source=SOURCE).routes == ()

    def test_env_overrides_arguments(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("FWD_SOURCE", "https://smee.io/env")
        monkeypatch.setenv("FWD_TARGET", "http://env-target")

        settings = RelaySettings.load(source=SOURCE, target=TARGET)

        assert settings.routes == (Route("https://smee.io/env", "http://env-target"),)

    def test_env_debug(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("FWD_DEBUG", "true")

        assert RelaySettings.load().debug is True

    def test_env_debug_false_overrides_flag(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("FWD_DEBUG", "0")

        assert RelaySettings.load(debug=True).debug is False

    def test_env_config_path(self, monkeypatch, tmp_path):
        config_file = tmp_path / "custom.json"
        config_file.write_text(json.dumps({"routes": {SOURCE: TARGET}}))
        monkeypatch.setenv("FWD_CONFIG", str(config_file))

        assert RelaySettings.load().routes == (Route(SOURCE, TARGET),)

    def test_default_path_constant(self):
        assert DEFAULT_CONFIG_PATH == "~/.config/fwd/fwd.json"


class TestRelaySettingsValidate:
    """Tests for RelaySettings.validate."""

    def test_valid(self):
        settings = RelaySettings(routes=(Route(SOURCE, TARGET),))
        assert settings.validate() == []

    def test_non_http_urls(self):
        settings = RelaySettings(routes=(Route("ftp://smee.io/x", "localhost:3000"),))

        errors = settings.validate()

        assert any("source" in e for e in errors)
        assert any("target" in e for e in errors)

    def test_bad_timeouts(self):
        settings = RelaySettings(
            read_timeout=0, forward=ForwardSettings(timeout=-1)
        )

        errors = settings.validate()

        assert "read_timeout must be positive" in errors
        assert "forward.timeout must be positive" in errors

    def test_bad_forward_client_settings(self):
        settings = RelaySettings(
            forward=ForwardSettings(connect_timeout=0, tls_timeout=-2.5, max_connections=0)
        )

        errors = settings.validate()

        assert "forward.connect_timeout must be positive" in errors
        assert "forward.tls_timeout must be positive" in errors
        assert "forward.max_connections must be at least 1" in errors
        assert "forward.timeout must be positive" not in errors

    def test_read_timeout_may_be_disabled(self):
        assert RelaySettings(read_timeout=None).validate() == []

    def test_unknown_decode_policy(self):
        settings = RelaySettings(forward=ForwardSettings(decode_failure="guess"))

        assert any("decode_failure" in e for e in settings.validate())

    def test_restart_policy_bounds(self):
        settings = RelaySettings(
            restart=RestartPolicy(initial_delay=10.0, max_delay=1.0, max_attempts=0)
        )

        errors = settings.validate()

        assert "restart.max_delay must be >= restart.initial_delay" in errors
        assert "restart.max_attempts must be at least 1" in errors
