"""Shared test fixtures for pytest."""

import httpx
import pytest
import structlog

from costalloc.db.store import RunStore
from costalloc.prometheus.client import (
    REQUIRED_CPU_QUERY,
    REQUIRED_MEMORY_QUERY,
    REQUIRED_REPLICAS_QUERY,
    PrometheusClient,
)

QUERIES = {
    "cpu": REQUIRED_CPU_QUERY,
    "memory": REQUIRED_MEMORY_QUERY,
    "replicas": REQUIRED_REPLICAS_QUERY,
}


def series(application: str, environment: str, component: str, value, timestamp: float = 1700000000.0) -> dict:
    """Build one element of a Prometheus vector result."""
    return {
        "metric": {
            "application": application,
            "environment": environment,
            "component": component,
        },
        "value": [timestamp, str(value)],
    }


def vector_body(result: list[dict], warnings: list[str] | None = None) -> dict:
    """Build a successful instant-query response body."""
    body = {"status": "success", "data": {"resultType": "vector", "result": result}}
    if warnings:
        body["warnings"] = warnings
    return body


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep structlog at its defaults so capture_logs sees every event."""
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def store():
    """A run store backed by a fresh in-memory SQLite database."""
    run_store = RunStore.from_url("sqlite:///:memory:")
    run_store.init_schema()
    yield run_store
    run_store.close()


@pytest.fixture
def make_prometheus():
    """Build a PrometheusClient whose backend answers from a dict.

    ``vectors`` maps "cpu", "memory" and "replicas" to lists of series;
    missing entries answer with an empty vector. Every request is recorded
    on ``client.requests``.
    """
    clients: list[PrometheusClient] = []

    def factory(vectors: dict[str, list[dict]] | None = None, handler=None) -> PrometheusClient:
        vectors = vectors or {}
        by_query = {QUERIES[name]: result for name, result in vectors.items()}
        requests: list[httpx.Request] = []

        def default_handler(request: httpx.Request) -> httpx.Response:
            query = request.url.params["query"]
            return httpx.Response(200, json=vector_body(by_query.get(query, [])))

        def recording_handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return (handler or default_handler)(request)

        client = PrometheusClient(
            "http://prometheus.test:9090",
            transport=httpx.MockTransport(recording_handler),
        )
        client.requests = requests
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()
