from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from backend.app.observability import MetricsRegistry, observe_request


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    client.get("/prospection/businesses/b42/card")

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "prospection_requests_total" in body
    assert "prospection_requests_5xx_total" in body
    assert "prospection_store_write_failures_total 0" in body
    assert "b42" not in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_metrics_label_rejections_by_method_and_route(client) -> None:
    client.put(
        "/prospection/businesses/other/notes",
        json={"text": "x", "business": {"id": "b1", "name": "Padaria"}},
    )

    body = client.get("/metrics").text
    assert "prospection_requests_4xx_total 1" in body
    assert (
        'prospection_route_requests_total{method="PUT",'
        'route="/prospection/businesses/{business_id}/notes",status="400"} 1'
    ) in body


def test_store_write_failure_is_counted() -> None:
    metrics = MetricsRegistry()
    request = SimpleNamespace(
        method="PUT", scope={}, url=SimpleNamespace(path="/prospection/goals")
    )

    async def failing_call_next(_request):
        raise OperationalError("UPDATE kv_entries", {}, Exception("disk full"))

    with pytest.raises(OperationalError):
        asyncio.run(observe_request(request, failing_call_next, metrics=metrics))

    snap = metrics.snapshot()
    assert snap.store_write_failures == 1
    assert snap.requests_5xx == 1
    assert snap.requests_total == 1
