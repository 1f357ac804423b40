from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("prospection")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_4xx: int
    requests_5xx: int
    store_write_failures: int
    total_latency_ms: float
    max_latency_ms: float

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests_total if self.requests_total else 0.0


def _metric(name: str, kind: str, help_text: str, value: object) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}", f"{name} {value}"]


class MetricsRegistry:
    """Request and store-failure counters for the CRM API, rendered as Prometheus text."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._store_write_failures = 0
        self._total_latency_ms = 0.0
        self._max_latency_ms = 0.0
        # (method, route template, status) -> count
        self._requests: Counter[tuple[str, str, int]] = Counter()

    def record(self, *, method: str, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests[(method, route, status_code)] += 1
            self._total_latency_ms += latency_ms
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)

    def record_store_failure(self) -> None:
        with self._lock:
            self._store_write_failures += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            by_status = Counter()
            for (_, _, status_code), count in self._requests.items():
                by_status[status_code // 100] += count
            return MetricsSnapshot(
                requests_total=sum(self._requests.values()),
                requests_4xx=by_status[4],
                requests_5xx=by_status[5],
                store_write_failures=self._store_write_failures,
                total_latency_ms=self._total_latency_ms,
                max_latency_ms=self._max_latency_ms,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        lines: list[str] = []
        lines += _metric(
            "prospection_requests_total", "counter", "HTTP requests served", snap.requests_total
        )
        lines += _metric(
            "prospection_requests_4xx_total",
            "counter",
            "Rejected requests (validation, unknown business, id mismatch)",
            snap.requests_4xx,
        )
        lines += _metric(
            "prospection_requests_5xx_total", "counter", "Failed requests", snap.requests_5xx
        )
        lines += _metric(
            "prospection_store_write_failures_total",
            "counter",
            "Database errors raised while writing prospection maps",
            snap.store_write_failures,
        )
        lines += _metric(
            "prospection_request_avg_latency_ms",
            "gauge",
            "Mean request latency",
            f"{snap.avg_latency_ms:.2f}",
        )
        lines += _metric(
            "prospection_request_max_latency_ms",
            "gauge",
            "Slowest request latency",
            f"{snap.max_latency_ms:.2f}",
        )
        with self._lock:
            routes = sorted(self._requests.items())
        for (method, route, status_code), count in routes:
            lines.append(
                "prospection_route_requests_total"
                f'{{method="{method}",route="{route}",status="{status_code}"}} {count}'
            )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def route_label(request: Request) -> str:
    # Business ids live in the path; label by route template to bound cardinality.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(request: Request, call_next, *, metrics: MetricsRegistry):
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except SQLAlchemyError:
        metrics.record_store_failure()
        logger.exception("store_failure method=%s path=%s", request.method, request.url.path)
        raise
    except Exception:
        logger.exception("request_failed method=%s path=%s", request.method, request.url.path)
        raise
    finally:
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = route_label(request)
        metrics.record(
            method=request.method, route=route, status_code=status_code, latency_ms=latency_ms
        )
        logger.info(
            "request method=%s route=%s status=%s latency_ms=%.2f",
            request.method,
            route,
            status_code,
            latency_ms,
        )
