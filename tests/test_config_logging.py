"""
Tests for configuration loading and structured logging
"""

import json
import logging
import sys
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from loan_engine.audit import AuditTrail
from loan_engine.config import LoanEngineConfig, get_config, reload_config
from loan_engine.exceptions import InvalidStateError
from loan_engine.loans import LoanManager, LoanStatus, create_loan_manager
from loan_engine.logging_config import (
    JSONFormatter, LoanTextFormatter, get_logger, log_action, setup_logging
)
from loan_engine.storage import InMemoryStorage, SQLiteStorage
from loan_engine.terms import LoanTerms, LoanType


class ListHandler(logging.Handler):
    """Collects records for inspection"""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestConfig:
    """Test LoanEngineConfig"""

    def test_defaults(self):
        config = LoanEngineConfig()

        assert config.database_url == "memory://"
        assert config.min_principal == Decimal('100')
        assert config.max_principal == Decimal('1000000')
        assert config.max_term_months == 360
        assert config.late_fee_rate_percent == Decimal('5')
        assert config.late_fee_period_days == 30
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_MAX_PRINCIPAL", "50000")
        monkeypatch.setenv("LOAN_ENGINE_ENABLE_AUDIT_LOGGING", "false")

        config = LoanEngineConfig()

        assert config.max_principal == Decimal('50000')
        assert not config.enable_audit_logging

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_LATE_FEE_PERIOD_DAYS", "15")
        try:
            assert reload_config().late_fee_period_days == 15
            assert get_config().late_fee_period_days == 15
        finally:
            monkeypatch.delenv("LOAN_ENGINE_LATE_FEE_PERIOD_DAYS")
            reload_config()

        assert get_config().late_fee_period_days == 30


class TestJSONFormatter:
    """Test structured log output"""

    def test_format_promotes_loan_context(self):
        logger = logging.getLogger("loan_engine.test_format")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "loan approved", (), None)
        record.loan_id = "loan-123"
        record.status = "approved"
        record.version = 2
        record.user_id = "officer-1"
        record.action = "loan_approved"
        record.details = {"risk_score": "35"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_engine.test_format"
        assert entry["message"] == "loan approved"
        assert entry["loan_id"] == "loan-123"
        assert entry["status"] == "approved"
        assert entry["version"] == 2
        assert entry["user_id"] == "officer-1"
        assert entry["action"] == "loan_approved"
        assert entry["details"] == {"risk_score": "35"}
        assert "correlation_id" not in entry
        assert entry["timestamp"] == datetime.fromtimestamp(record.created, timezone.utc).isoformat()

    def test_format_without_loan_context(self):
        logger = logging.getLogger("loan_engine.test_format")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "started", (), None)

        entry = json.loads(JSONFormatter().format(record))
        assert set(entry) == {"timestamp", "level", "logger", "message"}

    def test_format_includes_exception(self):
        logger = logging.getLogger("loan_engine.test_format")
        try:
            raise ValueError("boom")
        except ValueError:
            record = logger.makeRecord(logger.name, logging.ERROR, __name__, 0, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]


class TestLoanTextFormatter:
    """Test plain text output"""

    def test_appends_loan_context(self):
        logger = logging.getLogger("loan_engine.test_text")
        record = logger.makeRecord(logger.name, logging.WARNING, __name__, 0, "refused", (), None)
        record.loan_id = "loan-9"
        record.status = "pending"
        record.version = 1
        record.action = "disburse"

        line = LoanTextFormatter().format(record)

        assert "WARNING loan_engine.test_text: refused" in line
        assert line.endswith("[loan_id=loan-9 status=pending version=1 action=disburse]")

    def test_no_suffix_without_context(self):
        logger = logging.getLogger("loan_engine.test_text")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "started", (), None)

        assert LoanTextFormatter().format(record).endswith("loan_engine.test_text: started")


class TestLogging:
    """Test logger setup and log_action"""

    def setup_method(self):
        self.handler = ListHandler()

    def test_setup_logging(self):
        logger = setup_logging("DEBUG", logger_name="loan_engine.test_setup")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate

        # Repeated setup replaces the handler
        logger = setup_logging("WARNING", logger_name="loan_engine.test_setup", log_format="text")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, LoanTextFormatter)

    def test_setup_logging_rejects_unknown_format(self):
        with pytest.raises(ValueError):
            setup_logging("INFO", logger_name="loan_engine.test_setup", log_format="xml")

    def test_log_action_sets_attributes(self):
        logger = get_logger("loan_engine.test_action")
        logger.addHandler(self.handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(logger, "info", "payment applied", action="loan_payment_confirmed",
                       loan_id="loan-1", status=LoanStatus.ACTIVE, version=4,
                       user_id="borrower-1", correlation_id="req-9")
        finally:
            logger.removeHandler(self.handler)

        record = self.handler.records[0]
        assert record.getMessage() == "payment applied"
        assert record.action == "loan_payment_confirmed"
        assert record.loan_id == "loan-1"
        assert record.status == "active"
        assert record.version == 4
        assert record.correlation_id == "req-9"
        assert not hasattr(record, "details")

    def test_log_action_respects_level(self):
        logger = get_logger("loan_engine.test_level")
        logger.addHandler(self.handler)
        logger.setLevel(logging.WARNING)
        try:
            log_action(logger, "info", "not shown")
        finally:
            logger.removeHandler(self.handler)

        assert self.handler.records == []

    def test_manager_logs_transitions_and_refusals(self):
        logger = get_logger("loan_engine.loans")
        previous_level = logger.level
        logger.addHandler(self.handler)
        logger.setLevel(logging.INFO)
        try:
            manager = LoanManager(
                InMemoryStorage(), AuditTrail(InMemoryStorage()), LoanEngineConfig(),
                clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc)
            )
            loan = manager.create_loan("borrower-1", LoanTerms(
                amount="1000", interest_rate="10", term=6, loan_type=LoanType.STUDENT, purpose="Tuition"
            ))
            with pytest.raises(InvalidStateError):
                manager.disburse_loan(loan.id)
        finally:
            logger.removeHandler(self.handler)
            logger.setLevel(previous_level)

        submitted, refused = self.handler.records
        assert submitted.action == "loan_submitted"
        assert submitted.loan_id == loan.id
        assert submitted.status == "pending"
        assert submitted.version == 1
        assert refused.levelno == logging.WARNING
        assert refused.action == "disburse"
        assert refused.loan_id == loan.id
        assert refused.status == "pending"


class TestCreateLoanManager:
    """Test building a manager from configuration"""

    def teardown_method(self):
        logger = logging.getLogger("loan_engine")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
        logger.propagate = True

    def test_wires_storage_and_logging_from_config(self):
        config = LoanEngineConfig(database_url="sqlite://", log_level="DEBUG", log_format="text")

        manager = create_loan_manager(config)

        assert isinstance(manager.storage, SQLiteStorage)
        assert manager.audit_trail.storage is manager.storage
        assert manager.config is config

        logger = logging.getLogger("loan_engine")
        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0].formatter, LoanTextFormatter)

        loan = manager.create_loan("borrower-1", LoanTerms(
            amount="1000", interest_rate="10", term=6, loan_type=LoanType.STUDENT, purpose="Tuition"
        ))
        assert manager.storage.load("loans", loan.id)["status"] == "pending"
        assert manager.audit_trail.count_events() == 1
        manager.storage.close()

    def test_memory_url_and_json_logging(self):
        manager = create_loan_manager(LoanEngineConfig(database_url="memory://", log_level="WARNING"))

        assert isinstance(manager.storage, InMemoryStorage)
        logger = logging.getLogger("loan_engine")
        assert logger.level == logging.WARNING
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_unsupported_database_url(self):
        with pytest.raises(ValueError):
            create_loan_manager(LoanEngineConfig(database_url="postgresql://localhost/loans"))
