"""
Unit tests for the notification hub and the queue publisher.
"""

from datetime import UTC, datetime
from unittest.mock import Mock, patch

from widget_integration_core.notifications import NotificationHub, QueueNotificationPublisher
from widget_integration_core.schemas import IntegrationDataUpdated


def make_event(version=1) -> IntegrationDataUpdated:
    return IntegrationDataUpdated(
        integration_id="integration-1",
        discriminator_id="org-acme",
        organization_id="org-acme",
        version=version,
        widget_id="weather",
        fetched_at=datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
        payload={"temperature": 21},
    )


class TestNotificationHub:
    def test_publish_reaches_every_listener(self):
        hub = NotificationHub()
        first, second = Mock(), Mock()
        hub.subscribe(first)
        hub.subscribe(second)
        event = make_event()

        hub.publish(event)

        first.assert_called_once_with(event)
        second.assert_called_once_with(event)

    def test_unsubscribe(self):
        hub = NotificationHub()
        listener = Mock()
        unsubscribe = hub.subscribe(listener)

        unsubscribe()
        unsubscribe()
        hub.publish(make_event())

        listener.assert_not_called()

    def test_failing_listener_is_isolated(self):
        hub = NotificationHub()
        failing = Mock(side_effect=RuntimeError("gateway offline"))
        healthy = Mock()
        hub.subscribe(failing)
        hub.subscribe(healthy)

        hub.publish(make_event(version=2))

        healthy.assert_called_once()


class TestQueueNotificationPublisher:
    @patch("widget_integration_core.notifications.send_message_to_queue_direct")
    def test_sends_event_without_payload(self, mock_send):
        publisher = QueueNotificationPublisher(connection_string="UseDevelopmentStorage=true", queue_name="updates")

        publisher(make_event(version=4))

        connection_string, queue_name, message = mock_send.call_args.args
        assert connection_string == "UseDevelopmentStorage=true"
        assert queue_name == "updates"
        assert message["version"] == 4
        assert message["fetched_at"] == "2026-03-02T09:00:00Z"
        assert "payload" not in message

    def test_defaults_from_config(self, app_config):
        publisher = QueueNotificationPublisher()

        assert publisher.queue_name == app_config.queue.updates_queue_name
