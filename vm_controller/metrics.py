"""Prometheus metrics and diagnostics shared by the reconcilers."""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from prometheus_client import CollectorRegistry, Counter, Histogram

from .config import METRICS_PREFIX, REPORTER
from .errors import error_kind
from .models import ManagedResource

logger = logging.getLogger(__name__)


class Metrics:
    """
    Reconcile counters registered on an explicitly supplied registry.

    Each controller process (and each test) builds its own registry and
    passes it in; nothing is registered on the prometheus_client default.
    """

    def __init__(self, registry: CollectorRegistry, prefix: str = METRICS_PREFIX):
        self.registry = registry
        self.prefix = prefix
        self.reconciliations = Counter(
            f"{prefix}_reconciliations",
            "Number of reconciliations started",
            ["kind"],
            registry=registry,
        )
        self.failures = Counter(
            f"{prefix}_reconciliation_errors",
            "Number of failed reconciliations",
            ["kind", "instance", "error"],
            registry=registry,
        )
        self.duration = Histogram(
            f"{prefix}_reconcile_duration_seconds",
            "Time spent in a single reconcile",
            ["kind"],
            buckets=(0.01, 0.1, 0.25, 0.5, 1.0, 5.0, 15.0, 60.0),
            registry=registry,
        )

    @contextmanager
    def count_and_measure(self, kind: str) -> Iterator[None]:
        self.reconciliations.labels(kind=kind).inc()
        started = time.monotonic()
        try:
            yield
        finally:
            self.duration.labels(kind=kind).observe(time.monotonic() - started)

    def reconcile_failure(self, obj: ManagedResource, error: BaseException) -> None:
        self.failures.labels(
            kind=obj.KIND, instance=obj.key, error=error_kind(error)
        ).inc()


class Diagnostics:
    """Last-seen activity, exposed by the health endpoint."""

    def __init__(self, reporter: str = REPORTER):
        self.reporter = reporter
        self.last_event = datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def touch(self) -> None:
        with self._lock:
            self.last_event = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "last_event": self.last_event.isoformat(),
                "reporter": self.reporter,
            }
