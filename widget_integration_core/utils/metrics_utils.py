"""
Metrics processing utilities.

This module handles sending metrics to Azure Storage Queues for monitoring.
"""

from typing import List, Optional

from azure.storage.queue import QueueClient

from ..config import get_config
from ..schemas.metric_model import Metric
from .logger import get_logger


def send_metrics_to_queue(
    metrics: List[Metric],
    queue_name: Optional[str] = None,
    connection_string: Optional[str] = None,
) -> None:
    """
    Send a list of metrics to an Azure Storage Queue.

    Metrics are logged instead when no connection string is configured or the
    queue client cannot be created. Send failures are logged, never raised.

    Args:
        metrics: List of metrics to process
        queue_name: Name of the Azure Storage Queue (defaults to config.queue.metrics_queue_name)
        connection_string: Azure Storage connection string (defaults to config.queue)
    """
    app_config = get_config()
    queue_name = queue_name or app_config.queue.metrics_queue_name
    connection_string = connection_string or app_config.queue.connection_string
    log = get_logger()

    if not metrics:
        return

    if not connection_string:
        for metric in metrics:
            log.debug(f"METRIC: {metric.metric_name}, value={metric.value}", extra={"labels": metric.labels})
        return

    try:
        queue_client = QueueClient.from_connection_string(
            conn_str=connection_string, queue_name=queue_name
        )
    except Exception as e:
        log.error(f"Failed to initialize queue client: {str(e)}")
        for metric in metrics:
            log.warning(f"METRIC: {metric.metric_name}, value={metric.value}", extra={"labels": metric.labels})
        return

    for idx, metric in enumerate(metrics):
        json_metric = metric.model_dump_json()
        try:
            queue_client.send_message(json_metric)
        except Exception as e:
            if "QueueNotFound" in str(e) or "does not exist" in str(e):
                try:
                    queue_client.create_queue()
                    queue_client.send_message(json_metric)
                except Exception as create_error:
                    log.error(
                        f"Failed to create queue or send metric {idx + 1}: {str(create_error)}"
                    )
            else:
                log.error(f"Failed to send metric {idx + 1}: {str(e)}")

    log.debug(f"Processed {len(metrics)} metrics", extra={"queue_name": queue_name})


process_metrics = send_metrics_to_queue
