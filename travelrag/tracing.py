import os

from ddtrace.trace import tracer


def tracing_enabled() -> bool:
    return os.getenv("DD_TRACE_ENABLED", "false").lower() in ("true", "1")


def configure_tracing(enabled: bool | None = None) -> None:
    """
    Spans around embedding requests, jobs and chat sessions are only sent
    when DD_TRACE_ENABLED is set to "true" (or "1"), unless `enabled`
    overrides the environment.
    """
    tracer.enabled = tracing_enabled() if enabled is None else enabled
