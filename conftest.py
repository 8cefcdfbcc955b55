import pytest


@pytest.fixture(autouse=True)
def clear_fwd_environment(monkeypatch):
    """Keep FWD_* variables of the calling shell out of the tests."""
    for name in ("FWD_SOURCE", "FWD_TARGET", "FWD_DEBUG", "FWD_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    yield
