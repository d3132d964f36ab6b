"""
Unit tests for direct Azure Storage Queue sends.
"""

import json
from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest

from widget_integration_core.utils.queue_utils import send_message_to_queue_direct


@pytest.fixture
def queue_client():
    client = Mock()
    with patch("widget_integration_core.utils.queue_utils.QueueClient") as mock_client_class:
        mock_client_class.from_connection_string.return_value = client
        yield client


class TestSendMessageToQueueDirect:
    def test_sends_json(self, queue_client):
        send_message_to_queue_direct(
            "conn", "updates", {"version": 2, "fetched_at": datetime(2026, 3, 2, tzinfo=UTC)}
        )

        body = json.loads(queue_client.send_message.call_args.args[0])
        assert body == {"version": 2, "fetched_at": "2026-03-02T00:00:00Z"}

    def test_creates_missing_queue(self, queue_client):
        queue_client.send_message.side_effect = [Exception("QueueNotFound"), None]

        send_message_to_queue_direct("conn", "updates", {"version": 1})

        queue_client.create_queue.assert_called_once()
        assert queue_client.send_message.call_count == 2

    def test_other_errors_are_raised(self, queue_client):
        queue_client.send_message.side_effect = Exception("AuthenticationFailed")

        with pytest.raises(Exception, match="AuthenticationFailed"):
            send_message_to_queue_direct("conn", "updates", {"version": 1})

        queue_client.create_queue.assert_not_called()

    def test_unserializable_message(self, queue_client):
        with pytest.raises(Exception):
            send_message_to_queue_direct("conn", "updates", {"lock": object()})

        queue_client.send_message.assert_not_called()
