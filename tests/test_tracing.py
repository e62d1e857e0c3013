import pytest
from ddtrace.trace import tracer

from travelrag.tracing import configure_tracing


@pytest.fixture(autouse=True)
def _disable_tracing():
    yield
    configure_tracing(False)


@pytest.mark.parametrize(
    "value,expected", [("true", True), ("1", True), ("false", False), ("", False)]
)
def test_tracing_follows_environment(monkeypatch, value: str, expected: bool):
    monkeypatch.setenv("DD_TRACE_ENABLED", value)
    configure_tracing()
    assert tracer.enabled is expected


def test_tracing_override(monkeypatch):
    monkeypatch.setenv("DD_TRACE_ENABLED", "true")
    configure_tracing(False)
    assert tracer.enabled is False
