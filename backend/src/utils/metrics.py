"""
Metrics sinks.

Components receive a sink through their constructor instead of touching
process-wide counters. ``LoggingMetrics`` is used by the running service,
``InMemoryMetrics`` by tests and the guardrails endpoint, ``NoopMetrics``
when metrics are switched off.
"""

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, List

logger = logging.getLogger("metrics")


class MetricsSink:
    """Interface for counters and observations."""

    def increment(self, name: str, by: int = 1) -> int:
        raise NotImplementedError

    def observe(self, name: str, **meta: Any) -> None:
        raise NotImplementedError

    @asynccontextmanager
    async def timed(self, name: str, **meta: Any):
        """Count calls/errors for ``name`` and observe the duration."""
        calls = self.increment(f"{name}.calls")
        started = time.monotonic()
        try:
            yield
        except Exception as e:
            self.increment(f"{name}.errors")
            self.observe(
                name,
                **meta,
                duration_ms=int((time.monotonic() - started) * 1000),
                calls=calls,
                success=False,
                error=str(e) or type(e).__name__,
            )
            raise
        self.observe(
            name,
            **meta,
            duration_ms=int((time.monotonic() - started) * 1000),
            calls=calls,
            success=True,
        )


class NoopMetrics(MetricsSink):
    def increment(self, name: str, by: int = 1) -> int:
        return 0

    def observe(self, name: str, **meta: Any) -> None:
        return None


class InMemoryMetrics(MetricsSink):
    """Keeps counters and observations in memory."""

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.observations: List[Dict[str, Any]] = []

    def increment(self, name: str, by: int = 1) -> int:
        self.counters[name] += by
        return self.counters[name]

    def get(self, name: str) -> int:
        return self.counters.get(name, 0)

    def observe(self, name: str, **meta: Any) -> None:
        self.observations.append({"metric": name, **meta})

    def observed(self, name: str) -> List[Dict[str, Any]]:
        return [o for o in self.observations if o["metric"] == name]


class LoggingMetrics(InMemoryMetrics):
    """In-memory counters plus one structured log line per observation."""

    def observe(self, name: str, **meta: Any) -> None:
        super().observe(name, **meta)
        # Keep the in-memory list bounded for long-running processes
        if len(self.observations) > 1000:
            del self.observations[:500]
        logger.info(name, extra={"metric": name, **meta})


def build_metrics(config) -> MetricsSink:
    """Pick a sink for the given config."""
    if not config.metrics_enabled:
        return NoopMetrics()
    return LoggingMetrics()
