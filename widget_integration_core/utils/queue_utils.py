"""
Azure Storage Queue utilities.

Direct SDK sends used for integration update notifications.
"""

import json
from typing import Any, Dict

from azure.storage.queue import QueueClient
from pydantic_core import to_jsonable_python

from .logger import get_logger


def send_message_to_queue_direct(
    connection_string: str, queue_name: str, message_data: Dict[str, Any]
) -> None:
    """
    Send a message directly to Azure Storage Queue using the SDK.

    The queue is created when it does not exist yet.

    Args:
        connection_string: Azure Storage connection string
        queue_name: Name of the target queue
        message_data: Message data to send (will be JSON serialized)

    Raises:
        Exception: Serialization or SDK errors are logged and re-raised
    """
    logger = get_logger()

    try:
        json_data = json.dumps(to_jsonable_python(message_data))
    except Exception as e:
        logger.error(f"Failed to serialize message for queue {queue_name}: {str(e)}")
        raise

    queue_client = QueueClient.from_connection_string(
        conn_str=connection_string, queue_name=queue_name
    )
    try:
        queue_client.send_message(json_data)
        logger.debug(f"Sent message to queue: {queue_name}")
    except Exception as e:
        if "QueueNotFound" not in str(e) and "does not exist" not in str(e):
            logger.error(f"Failed to send message to queue {queue_name}: {str(e)}")
            raise
        try:
            logger.debug(f"Queue {queue_name} not found, creating it...")
            queue_client.create_queue()
            queue_client.send_message(json_data)
        except Exception as create_error:
            logger.error(
                f"Failed to create queue or send message to {queue_name}: {str(create_error)}"
            )
            raise
