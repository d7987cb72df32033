"""
Tests for configuration and structured logging
"""

import json
import logging

from emi_engine.config import EmiEngineConfig, get_config, reload_config
from emi_engine.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self, monkeypatch):
        for name in ("EMI_DATABASE_URL", "EMI_DEFAULT_CURRENCY", "EMI_DEFAULT_GRACE_INSTALLMENTS"):
            monkeypatch.delenv(name, raising=False)
        config = EmiEngineConfig(_env_file=None)

        assert config.database_url == "sqlite:///emi_engine.db"
        assert config.default_currency == "BDT"
        assert config.default_grace_installments == 3
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EMI_DATABASE_URL", "memory://")
        monkeypatch.setenv("EMI_DEFAULT_GRACE_INSTALLMENTS", "1")
        monkeypatch.setenv("EMI_LOCK_TIMEOUT_SECONDS", "0.5")

        config = EmiEngineConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.default_grace_installments == 1
        assert config.lock_timeout_seconds == 0.5

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("EMI_DEFAULT_CURRENCY", "USD")
        try:
            assert reload_config().default_currency == "USD"
            assert get_config().default_currency == "USD"
        finally:
            monkeypatch.delenv("EMI_DEFAULT_CURRENCY")
            reload_config()


class TestLogging:
    """Test JSON structured logging"""

    def make_record(self, **attrs):
        record = logging.LogRecord("emi_engine.service", logging.INFO, __file__, 1,
                                   "Payment recorded", (), None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        record = self.make_record(user_id="user-1", action="record_payment",
                                  resource="loan:abc", extra={"installments": [1, 2]})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "emi_engine.service"
        assert entry["message"] == "Payment recorded"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "loan:abc"
        assert entry["extra"] == {"installments": [1, 2]}
        assert "correlation_id" not in entry

    def test_setup_logging_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "emi.log"
        logger = setup_logging("DEBUG", logger_name="emi_engine_test", log_file=str(log_file))
        logger = setup_logging("DEBUG", logger_name="emi_engine_test", log_file=str(log_file))

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG

        log_action(logger, "info", "Loan created", user_id="user-1",
                   action="create_loan", resource="loan:1")
        logger.handlers[0].flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["action"] == "create_loan"
        assert entry["user_id"] == "user-1"

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "emi.log"
        logger = setup_logging("INFO", logger_name="emi_engine_text", fmt="text", log_file=str(log_file))
        logger.info("plain line")
        logger.handlers[0].flush()
        assert "INFO emi_engine_text: plain line" in log_file.read_text()

    def test_log_action_respects_level(self, caplog):
        logger = get_logger("emi_engine_quiet")
        logger.setLevel(logging.WARNING)
        with caplog.at_level(logging.WARNING, logger="emi_engine_quiet"):
            log_action(logger, "info", "ignored")
            log_action(logger, "warning", "kept", action="prepay")
        assert [r.getMessage() for r in caplog.records] == ["kept"]
        assert caplog.records[0].action == "prepay"
