"""Prometheus client for requested-resource metrics.

Issues instant queries against the Prometheus HTTP API and turns the
resulting vectors into resource records.

Usage:
    from costalloc.prometheus import PrometheusClient

    with PrometheusClient("http://prometheus:9090") as prometheus:
        resources = prometheus.get_required_resources(datetime.now(UTC))
"""

from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Any

import httpx

from costalloc.aggregation import map_to_required_resources
from costalloc.errors import ClientCreationFailed, QueryFailed, UnexpectedResultType
from costalloc.logging import get_logger
from costalloc.models import RequiredResources, Sample, to_utc

logger = get_logger(__name__)

QUERY_PATH = "/api/v1/query"
DEFAULT_QUERY_TIMEOUT = 10.0

REQUIRED_CPU_QUERY = (
    "(sum(radix_operator_requested_cpu) by (application, environment, component))"
)
REQUIRED_MEMORY_QUERY = (
    "(sum(radix_operator_requested_memory) by (application, environment, component))"
)
REQUIRED_REPLICAS_QUERY = (
    "(sum(radix_operator_requested_replicas) by (application, environment, component))"
)


def _parse_sample(item: dict[str, Any]) -> Sample:
    timestamp, value = item["value"]
    labels = {str(k): str(v) for k, v in item.get("metric", {}).items()}
    return Sample(labels=labels, value=float(value), timestamp=float(timestamp))


class PrometheusClient:
    """Synchronous client for Prometheus instant queries.

    Every query gets its own time budget; three sequential queries can
    therefore take up to three times ``timeout``.

    Args:
        address: Base URL of the Prometheus server (e.g. "http://prometheus:9090").
        timeout: Per-query timeout in seconds (default: 10).
        transport: Optional httpx transport, used by tests.

    Raises:
        ClientCreationFailed: If the address is not an absolute http(s) URL.
    """

    def __init__(
        self,
        address: str,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        try:
            url = httpx.URL(address)
        except (httpx.InvalidURL, TypeError) as exc:
            raise ClientCreationFailed(f"invalid address {address!r}: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ClientCreationFailed(f"invalid address {address!r}")

        self.address = address
        self.timeout = timeout
        self._client = httpx.Client(base_url=url, timeout=timeout, transport=transport)

    def __enter__(self) -> PrometheusClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query_vector(
        self,
        query: str,
        at: datetime,
        metric: str | None = None,
    ) -> list[Sample]:
        """Run an instant query and return its vector.

        Args:
            query: PromQL expression.
            at: Evaluation timestamp.
            metric: Name used in logs and error messages.

        Returns:
            One Sample per series in the result vector.

        Raises:
            ClientCreationFailed: The backend could not be reached.
            QueryFailed: The query failed, timed out or returned garbage.
            UnexpectedResultType: The result is not a vector.
        """
        params = {
            "query": query,
            "time": f"{to_utc(at).timestamp():.3f}",
            "timeout": f"{self.timeout:g}s",
        }
        deadline = time.monotonic() + self.timeout
        try:
            with self._client.stream("GET", QUERY_PATH, params=params) as response:
                content = self._read_before(response, deadline, metric)
        except httpx.ConnectError as exc:
            raise ClientCreationFailed(
                f"cannot connect to {self.address}: {exc}", metric=metric
            ) from exc
        except httpx.TimeoutException as exc:
            raise QueryFailed(
                f"query timed out after {self.timeout:g}s", metric=metric
            ) from exc
        except httpx.HTTPError as exc:
            raise QueryFailed(f"error querying Prometheus: {exc}", metric=metric) from exc

        try:
            body = json.loads(content)
        except ValueError as exc:
            raise QueryFailed(
                f"undecodable response (HTTP {response.status_code})", metric=metric
            ) from exc

        if not isinstance(body, dict):
            raise QueryFailed("response body is not an object", metric=metric)

        if body.get("status") != "success" or response.is_error:
            error_type = body.get("errorType", f"HTTP {response.status_code}")
            error = body.get("error", response.reason_phrase)
            raise QueryFailed(f"error querying Prometheus: {error_type}: {error}", metric=metric)

        warnings = body.get("warnings")
        if warnings:
            logger.warning("prometheus_query_warnings", metric=metric, warnings=warnings)

        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise QueryFailed("response data is not an object", metric=metric)
        result_type = data.get("resultType", "")
        if result_type != "vector":
            raise UnexpectedResultType(result_type, metric=metric)

        try:
            samples = [_parse_sample(item) for item in data.get("result") or []]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise QueryFailed(f"malformed sample in result: {exc}", metric=metric) from exc

        logger.debug("prometheus_query_done", metric=metric, samples=len(samples))
        return samples

    def _read_before(self, response: httpx.Response, deadline: float, metric: str | None) -> bytes:
        """Read the whole body, failing once ``deadline`` has passed.

        httpx timeouts apply per connect/read operation; a backend trickling
        its body would otherwise hold the query past its budget.
        """
        chunks = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise QueryFailed(
                    f"query exceeded its {self.timeout:g}s budget", metric=metric
                )
        return b"".join(chunks)

    def get_required_cpu(self, at: datetime) -> list[Sample]:
        """Requested CPU in millicores per component."""
        return self.query_vector(REQUIRED_CPU_QUERY, at, metric="cpu")

    def get_required_memory(self, at: datetime) -> list[Sample]:
        """Requested memory in megabytes per component."""
        return self.query_vector(REQUIRED_MEMORY_QUERY, at, metric="memory")

    def get_required_replicas(self, at: datetime) -> list[Sample]:
        """Requested replicas per component."""
        return self.query_vector(REQUIRED_REPLICAS_QUERY, at, metric="replicas")

    def get_required_resources(
        self,
        at: datetime,
        strict: bool = False,
    ) -> list[RequiredResources]:
        """Fetch cpu, memory and replicas at ``at`` and join them.

        The queries run one after another; the first failure aborts the
        retrieval.

        Args:
            at: Measurement timestamp.
            strict: See :func:`costalloc.aggregation.map_to_required_resources`.

        Returns:
            One record per component present in the replicas vector.
        """
        cpu = self.get_required_cpu(at)
        memory = self.get_required_memory(at)
        replicas = self.get_required_replicas(at)
        return map_to_required_resources(cpu, memory, replicas, strict=strict)
