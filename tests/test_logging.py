"""
Tests for logging setup and redaction.
"""
import io
import json
import logging
from typing import Any, Generator

import pytest
import structlog

from gateway_hub.monitoring.logging import (
    REDACTED,
    AppContext,
    redact_sensitive,
    setup_logging,
)

from conftest import make_settings


@pytest.fixture
def restore_logging() -> Generator[None, Any, None]:
    """Put the root logger and structlog back after a test reconfigures them."""
    root_logger = logging.getLogger()
    handlers, level = root_logger.handlers[:], root_logger.level
    yield
    root_logger.handlers = handlers
    root_logger.setLevel(level)
    structlog.reset_defaults()


class TestProcessors:
    """Test suite for the custom structlog processors."""

    @pytest.mark.unit
    def test_redacts_sensitive_keys(self) -> None:
        event = redact_sensitive(
            None,
            "info",
            {"event": "tokenize", "card_number": "4242424242424242", "CVV": "123", "amount": "10.00"},
        )

        assert event == {"event": "tokenize", "card_number": REDACTED, "CVV": REDACTED, "amount": "10.00"}

    @pytest.mark.unit
    def test_redacts_nested_values(self) -> None:
        event = redact_sensitive(
            None,
            "info",
            {"event": "request", "headers": {"Authorization": "Bearer abc", "x-request-id": "r1"}},
        )

        assert event["headers"] == {"Authorization": REDACTED, "x-request-id": "r1"}

    @pytest.mark.unit
    def test_app_context_does_not_override(self) -> None:
        processor = AppContext("payment-gateway-hub", "production")

        event = processor(None, "info", {"event": "x", "app_env": "staging"})

        assert event["app_name"] == "payment-gateway-hub"
        assert event["app_env"] == "staging"


class TestSetupLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_writes_redacted_json(self, restore_logging: None) -> None:
        stream = io.StringIO()
        setup_logging(make_settings(log_level="INFO"), stream=stream)

        structlog.get_logger("gateway_hub.audit").info(
            "card_tokenized", card_number="4111111111111111", token_id="tok_1"
        )

        lines = [json.loads(line) for line in stream.getvalue().splitlines()]
        event = json.loads(lines[-1]["message"])
        assert event["event"] == "card_tokenized"
        assert event["card_number"] == REDACTED
        assert event["token_id"] == "tok_1"
        assert event["app_name"] == "payment-gateway-hub-test"
        assert event["level"] == "info"
        assert "4111111111111111" not in stream.getvalue()

    @pytest.mark.unit
    def test_level_and_library_caps(self, restore_logging: None) -> None:
        setup_logging(
            make_settings(log_level="WARNING"),
            stream=io.StringIO(),
            library_levels={"stripe": logging.ERROR},
        )

        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("stripe").level == logging.ERROR
