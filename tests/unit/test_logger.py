"""
Unit tests for logger utilities.

Tests ContextAwareLogger formatting, AzureQueueHandler record shipping and
configure_logging/get_logger wiring.
"""

import json
import logging
import sys
from unittest.mock import Mock, patch

import pytest

from widget_integration_core.context.tenant_context import tenant_context
from widget_integration_core.utils.logger import (
    LOGGER_NAME,
    AzureQueueHandler,
    ContextAwareLogger,
    TenantContextFilter,
    configure_logging,
    get_logger,
)

CONNECTION_STRING = "DefaultEndpointsProtocol=https;AccountName=test;AccountKey=dGVzdA==;EndpointSuffix=core.windows.net"


def make_record(msg="Poll scheduled", level=logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(LOGGER_NAME, level, __file__, 10, msg, (), None, func="dispatch_due")
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestContextAwareLogger:
    def setup_method(self):
        self.mock_logger = Mock(spec=logging.Logger)
        self.context_logger = ContextAwareLogger(self.mock_logger)

    def test_message_without_extras(self):
        self.context_logger.info("Fetch started")

        self.mock_logger.info.assert_called_once_with("Fetch started", extra={})

    def test_extras_are_appended_and_preserved(self):
        extra = {"integration_id": "i-1", "version": 3}

        self.context_logger.warning("Fetch failed", extra=extra)

        self.mock_logger.warning.assert_called_once_with(
            "Fetch failed | integration_id=i-1 | version=3", extra=extra
        )

    def test_exc_info_passes_through(self):
        self.context_logger.error("Poll job failed", extra={"integration_id": "i-1"}, exc_info=True)

        self.mock_logger.error.assert_called_once_with(
            "Poll job failed | integration_id=i-1", extra={"integration_id": "i-1"}, exc_info=True
        )

    def test_set_level_and_is_enabled_for(self):
        self.mock_logger.isEnabledFor.return_value = True

        self.context_logger.set_level(logging.DEBUG)

        self.mock_logger.setLevel.assert_called_once_with(logging.DEBUG)
        assert self.context_logger.is_enabled_for(logging.DEBUG) is True


class TestTenantContextFilter:
    def test_stamps_current_organization(self):
        record = make_record()

        with tenant_context("org-acme"):
            assert TenantContextFilter().filter(record) is True

        assert record.tenant_id == "org-acme"

    def test_no_organization(self):
        record = make_record()

        TenantContextFilter().filter(record)

        assert not hasattr(record, "tenant_id")


class TestAzureQueueHandler:
    @patch("widget_integration_core.utils.logger.QueueServiceClient")
    def test_creates_missing_queue(self, mock_service_class):
        service = Mock()
        service.list_queues.return_value = []
        mock_service_class.from_connection_string.return_value = service

        AzureQueueHandler(queue_name="logs-queue", connection_string=CONNECTION_STRING)

        service.create_queue.assert_called_once_with("logs-queue")

    def test_without_connection_string(self, capsys):
        handler = AzureQueueHandler(connection_string="")

        handler.emit(make_record())
        handler.flush()

        assert "connection string not provided" in capsys.readouterr().err
        assert len(handler.log_buffer) == 1

    def test_build_entry_collects_context(self):
        handler = AzureQueueHandler(connection_string="")
        record = make_record(integration_id="i-1", discriminator_id="org-acme", tenant_id="org-acme")

        entry = handler.build_entry(record)

        assert entry["level"] == "INFO"
        assert entry["message"] == "Poll scheduled"
        assert entry["function"] == "dispatch_due"
        assert entry["tenant_id"] == "org-acme"
        assert entry["context"] == {"integration_id": "i-1", "discriminator_id": "org-acme"}

    def test_build_entry_with_exception(self):
        handler = AzureQueueHandler(connection_string="")
        try:
            raise RuntimeError("upstream down")
        except RuntimeError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        entry = handler.build_entry(record)

        assert entry["exception"]["type"] == "RuntimeError"
        assert entry["exception"]["message"] == "upstream down"
        assert entry["exception"]["traceback"]

    @patch("widget_integration_core.utils.logger.QueueClient")
    @patch("widget_integration_core.utils.logger.QueueServiceClient")
    def test_flushes_when_batch_is_full(self, mock_service_class, mock_client_class):
        mock_service_class.from_connection_string.return_value.list_queues.return_value = []
        queue_client = Mock()
        mock_client_class.from_connection_string.return_value = queue_client
        handler = AzureQueueHandler(connection_string=CONNECTION_STRING, batch_size=2)

        handler.emit(make_record("first"))
        queue_client.send_message.assert_not_called()
        handler.emit(make_record("second"))

        sent = [json.loads(c.args[0])["message"] for c in queue_client.send_message.call_args_list]
        assert sent == ["first", "second"]
        assert handler.log_buffer == []

    @patch("widget_integration_core.utils.logger.QueueClient")
    @patch("widget_integration_core.utils.logger.QueueServiceClient")
    def test_send_failure_is_not_raised(self, mock_service_class, mock_client_class, capsys):
        mock_service_class.from_connection_string.return_value.list_queues.return_value = []
        queue_client = Mock()
        queue_client.send_message.side_effect = RuntimeError("throttled")
        mock_client_class.from_connection_string.return_value = queue_client
        handler = AzureQueueHandler(connection_string=CONNECTION_STRING, batch_size=1)

        handler.emit(make_record())

        assert "throttled" in capsys.readouterr().err


class TestConfigureLogging:
    def test_console_only(self):
        logger = configure_logging("poller", log_level="DEBUG", enable_queue=False)

        assert isinstance(logger, ContextAwareLogger)
        assert logger.logger.name == f"{LOGGER_NAME}.poller"
        assert logger.logger.level == logging.DEBUG
        assert [type(h) for h in logger.logger.handlers] == [logging.StreamHandler]
        assert get_logger() is logger

    @patch("widget_integration_core.utils.logger.QueueServiceClient")
    def test_with_queue_handler(self, mock_service_class):
        mock_service_class.from_connection_string.return_value.list_queues.return_value = []

        logger = configure_logging(
            "reaper", enable_queue=True, connection_string=CONNECTION_STRING, queue_name="logs-queue"
        )

        queue_handlers = [h for h in logger.logger.handlers if isinstance(h, AzureQueueHandler)]
        assert len(queue_handlers) == 1
        assert queue_handlers[0].queue_name == "logs-queue"

    def test_reconfigure_replaces_handlers(self):
        configure_logging("api", enable_queue=False)
        logger = configure_logging("api", enable_queue=False)

        assert len(logger.logger.handlers) == 1

    def test_get_logger_fallback(self):
        logger = get_logger("WARNING")

        assert logger.logger.name == LOGGER_NAME
        assert logger.logger.level == logging.WARNING


@pytest.fixture(autouse=True)
def drop_configured_handlers():
    yield
    for name in ("poller", "reaper", "api"):
        logging.getLogger(f"{LOGGER_NAME}.{name}").handlers.clear()
