"""Error tracking for the API and the ARQ worker.

Sentry is the only backend; without SENTRY_DSN every call here degrades to
plain logging, which is what tests and local runs use.

    from codsync.telemetry import init_observability, capture_exception
"""

from codsync.telemetry.sentry import capture_exception, flush, init_sentry


def init_observability() -> dict:
    """Call once per process (API startup, worker startup)."""
    return {"sentry": init_sentry()}


def flush_observability(timeout: float = 2.0) -> None:
    """Deliver queued events before the process exits."""
    flush(timeout)


__all__ = ["init_observability", "flush_observability", "capture_exception"]
