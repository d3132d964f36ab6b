"""
Notification hook for committed integration data.

Listeners are called synchronously after a successful commit, outside the
per-key lock. A failing listener is logged and never affects the fetch or
the other listeners.
"""

import threading
from typing import Callable, List, Optional

from .config import get_config
from .schemas.integration_data_schema import IntegrationDataUpdated
from .utils.logger import get_logger
from .utils.queue_utils import send_message_to_queue_direct

Listener = Callable[[IntegrationDataUpdated], None]


class NotificationHub:
    """In-process fan-out of IntegrationDataUpdated events."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self.logger = get_logger()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: IntegrationDataUpdated) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                self.logger.error(
                    f"Notification listener failed: {type(e).__name__}: {str(e)}",
                    extra={
                        "integration_id": event.integration_id,
                        "discriminator_id": event.discriminator_id,
                        "version": event.version,
                    },
                )


class QueueNotificationPublisher:
    """
    Listener forwarding events to an Azure Storage Queue, for device
    gateways running in other processes.
    """

    def __init__(self, connection_string: Optional[str] = None, queue_name: Optional[str] = None):
        app_config = get_config()
        self.connection_string = connection_string or app_config.queue.connection_string
        self.queue_name = queue_name or app_config.queue.updates_queue_name

    def __call__(self, event: IntegrationDataUpdated) -> None:
        # Devices fetch the payload through the read API, so it stays out of the message
        send_message_to_queue_direct(
            self.connection_string,
            self.queue_name,
            event.model_dump(mode="json", exclude={"payload"}),
        )
