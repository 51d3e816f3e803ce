"""
Tests for database URL handling and log formatting.
"""

import json
import logging
import sys

from rentflow.database import async_database_url
from rentflow.logging_config import JSONFormatter, configure_logging


class TestDatabaseUrl:

    def test_sslmode_stripped_and_driver_set(self):
        url = async_database_url("postgresql://rent:pw@db.example.com:5432/rentflow?sslmode=require")
        assert url == "postgresql+asyncpg://rent:pw@db.example.com:5432/rentflow"

    def test_other_query_params_kept(self):
        url = async_database_url("postgres://rent:pw@db/rentflow?sslmode=disable&application_name=api")
        assert url == "postgresql+asyncpg://rent:pw@db/rentflow?application_name=api"

    def test_async_driver_untouched(self):
        url = "sqlite+aiosqlite:///ledger.db"
        assert async_database_url(url) == url


class TestJSONFormatter:

    def make_record(self, exc_info=None) -> logging.LogRecord:
        return logging.LogRecord(
            name="rentflow.services.batch_service",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Batch %s dispatched",
            args=("BATCH-202601-abc",),
            exc_info=exc_info,
        )

    def test_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert entry["message"] == "Batch BATCH-202601-abc dispatched"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "rentflow.services.batch_service"
        assert entry["app"] == "rentflow"

    def test_context_merged(self):
        record = self.make_record()
        record.context = {"batch_id": "BATCH-202601-abc", "pending": 3}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["batch_id"] == "BATCH-202601-abc"
        assert entry["pending"] == 3

    def test_exception_included(self):
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            record = self.make_record(exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert "ledger unavailable" in entry["exception"]


def test_configure_logging_single_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("warning")
        configure_logging("warning")

        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
