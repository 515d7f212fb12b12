"""
Unit tests for the service entry point.
"""

import asyncio
import logging

import json_log_formatter
import pytest

from dr.billvault.config import ObservabilityConfig, ServiceConfig
from dr.billvault.main import Server, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self, root_logger):
        setup_logging(ServiceConfig(observability=ObservabilityConfig(log_level="DEBUG", log_format="json")))

        [handler] = root_logger.handlers
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, root_logger):
        setup_logging(ServiceConfig(observability=ObservabilityConfig(log_level="warning", log_format="text")))

        [handler] = root_logger.handlers
        assert not isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert root_logger.level == logging.WARNING


class TestServer:
    """Tests for the Server wrapper."""

    @pytest.mark.asyncio
    async def test_runs_until_shutdown(self, config):
        server = Server(config)

        task = asyncio.create_task(server.run())
        while not server.service.running:
            await asyncio.sleep(0.01)
        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert server.service.running is False
