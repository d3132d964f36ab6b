from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field


class Metric(BaseModel):
    """Base model for any metric sent to the metrics queue."""

    type: str = "metric"
    metric_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    value: int | float
    labels: Dict[str, Any] = Field(default_factory=dict)


class OperationMetric(Metric):
    """Specialized metric for operation performance."""

    type: str = "operation_metric"

    @classmethod
    def duration(
        cls,
        operation: str,
        module: str,
        function: str,
        tenant_id: str,
        status: str,
        duration_ms: float,
    ) -> "OperationMetric":
        return cls(
            metric_name="operation_duration_ms",
            value=duration_ms,
            labels={
                "operation": operation,
                "module": module,
                "function": function,
                "tenant_id": tenant_id,
                "status": status,
            },
        )


class FetchMetric(Metric):
    """Metrics emitted by the integration data cache for each fetch attempt."""

    type: str = "fetch_metric"

    @classmethod
    def fetch_duration(
        cls, integration_id: str, organization_id: str, status: str, duration_ms: float
    ) -> "FetchMetric":
        return cls(
            metric_name="integration_fetch_duration_ms",
            value=duration_ms,
            labels={
                "integration_id": integration_id,
                "tenant_id": organization_id,
                "status": status,
            },
        )

    @classmethod
    def entries_reaped(cls, count: int) -> "FetchMetric":
        return cls(metric_name="integration_entries_reaped", value=count)
