"""Pydantic schemas exchanged between repositories, the cache and the scheduler."""

from .integration_data_schema import IntegrationDataRead, IntegrationDataUpdated, WidgetDataView
from .integration_schema import IntegrationDefinition, OptionValue, WidgetConfigRead
from .metric_model import FetchMetric, Metric, OperationMetric
from .poll_schema import PollJob

__all__ = [
    "FetchMetric",
    "IntegrationDataRead",
    "IntegrationDataUpdated",
    "IntegrationDefinition",
    "Metric",
    "OperationMetric",
    "OptionValue",
    "PollJob",
    "WidgetConfigRead",
    "WidgetDataView",
]
