"""
Structured logging and schema migration tests.

Coverage:
  - setup_logging() writes JSON lines with service identity
  - ledger_context() binds account identifiers into stdlib log lines
  - init_db() brings an empty database to alembic head; close_db() disposes the engine
"""

import json
import logging

import pytest
import structlog
from sqlalchemy import create_engine, inspect

from telebill.core.structured_logging import SERVICE_NAME, ledger_context, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestStructuredLogging:

    def _read_lines(self, path):
        for handler in logging.getLogger().handlers:
            handler.flush()
        return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]

    def test_json_lines_with_service(self, tmp_path, restore_logging):
        setup_logging(log_dir=str(tmp_path), log_level="INFO")
        logging.getLogger("telebill.test").info("ledger ready")

        lines = self._read_lines(tmp_path / "telebill.jsonl")

        assert lines[-1]["event"] == "ledger ready"
        assert lines[-1]["service"] == SERVICE_NAME
        assert lines[-1]["level"] == "info"
        assert "ts" in lines[-1]

    def test_setup_from_settings(self, tmp_path, monkeypatch, restore_logging):
        from telebill.config import settings
        from telebill.core.structured_logging import setup_logging_from_settings

        monkeypatch.setattr(settings, "log_dir", str(tmp_path))
        monkeypatch.setattr(settings, "log_level", "warning")
        setup_logging_from_settings()

        assert logging.getLogger().level == logging.WARNING
        logging.getLogger("telebill.test").warning("low balance")
        assert self._read_lines(tmp_path / "telebill.jsonl")[-1]["level"] == "warning"

    def test_ledger_context_is_merged(self, tmp_path, restore_logging):
        setup_logging(log_dir=str(tmp_path), log_level="DEBUG")
        log = logging.getLogger("telebill.test")

        with ledger_context(account_id="acct_9", call_reference="CA9", subscription_id=None):
            log.info("settled")
        log.info("outside")

        lines = self._read_lines(tmp_path / "telebill.jsonl")
        inside, outside = lines[-2], lines[-1]
        assert inside["account_id"] == "acct_9"
        assert inside["call_reference"] == "CA9"
        assert "subscription_id" not in inside
        assert "account_id" not in outside

    def test_settlement_logs_carry_account(self, tmp_path, restore_logging, processor, make_account):
        make_account(balance="10.00")
        processor.record_call_started("CA-LOG", "acct_1")
        setup_logging(log_dir=str(tmp_path), log_level="INFO")

        processor.handle_call_completed("CA-LOG", "completed", 60)

        lines = self._read_lines(tmp_path / "telebill.jsonl")
        settled = [line for line in lines if line["event"].startswith("Call settled")]
        assert settled
        assert settled[-1]["account_id"] == "acct_1"
        assert settled[-1]["call_reference"] == "CA-LOG"


class TestSchemaLifecycle:
    """init_db() against a fresh database file, away from the shared test engine."""

    @pytest.fixture
    def fresh_database(self, tmp_path, monkeypatch):
        from telebill.core import database

        url = f"sqlite:///{tmp_path}/fresh.db"
        monkeypatch.setenv("DATABASE_URL", url)
        monkeypatch.setattr(database, "_engine", None)
        yield url
        database.close_db()

    def test_init_db_upgrades_to_head(self, fresh_database, restore_logging):
        from telebill.core.database import init_db

        init_db()

        engine = create_engine(fresh_database)
        try:
            inspector = inspect(engine)
            tables = set(inspector.get_table_names())
            unique_keys = {ix["name"] for ix in inspector.get_indexes("call_billing_records") if ix["unique"]}
        finally:
            engine.dispose()
        assert {"accounts", "call_billing_records", "number_subscriptions", "ledger_entries", "alembic_version"} <= tables
        assert "ix_call_billing_records_call_reference" in unique_keys

    def test_init_db_is_repeatable(self, fresh_database, restore_logging):
        from telebill.core.database import init_db

        init_db()
        init_db()

    def test_close_db_drops_engine(self, fresh_database):
        from telebill.core import database

        engine = database.get_engine()
        assert str(engine.url) == fresh_database
        database.close_db()
        assert database._engine is None
