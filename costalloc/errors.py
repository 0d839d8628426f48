"""Exceptions raised by costalloc.

Metrics-side errors carry the name of the metric being fetched; storage-side
errors wrap the underlying SQLAlchemy exception as ``__cause__``.
"""


class CostAllocationError(Exception):
    """Base exception for costalloc errors."""

    pass


# -----------------------------------------------------------------------------
# Metrics backend
# -----------------------------------------------------------------------------


class MetricsError(CostAllocationError):
    """Base exception for metrics backend errors.

    Args:
        message: Human readable description.
        metric: Which metric was being fetched (``cpu``, ``memory``,
            ``replicas``), if known.
    """

    def __init__(self, message: str, metric: str | None = None):
        self.metric = metric
        if metric:
            message = f"error getting {metric}: {message}"
        super().__init__(message)


class ClientCreationFailed(MetricsError):
    """Raised when the metrics backend cannot be addressed or reached."""

    pass


class QueryFailed(MetricsError):
    """Raised when a query fails, times out, or returns an unusable body."""

    pass


class UnexpectedResultType(MetricsError):
    """Raised when an instant query does not return a vector."""

    def __init__(self, result_type: str, metric: str | None = None):
        self.result_type = result_type
        super().__init__(
            f"query returned wrong datatype {result_type!r}, expected 'vector'",
            metric=metric,
        )


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------


class AggregationInconsistency(CostAllocationError):
    """Raised in strict mode when a cpu/memory sample has no replica sample."""

    def __init__(self, metric: str, key: tuple[str, str, str]):
        self.metric = metric
        self.key = key
        application, environment, component = key
        super().__init__(
            f"{metric} sample for application={application!r} "
            f"environment={environment!r} component={component!r} "
            "has no matching replicas sample"
        )


# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------


class StorageError(CostAllocationError):
    """Base exception for run store errors."""

    pass


class ConnectionUnavailable(StorageError):
    """Raised when the store is closed or the database does not answer."""

    pass


class StatementFailed(StorageError):
    """Raised when a SQL statement fails."""

    pass
