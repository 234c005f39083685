"""
Tests for exception classes.

Covers all exception types and their string representations.
"""

import pytest

from wispr.exceptions import (
    ConcurrencyError,
    ConfigurationError,
    GatewayRejectedError,
    HintGenerationFailedError,
    HintLedgerError,
    InsufficientBalanceError,
    InvoiceNotFoundError,
    MissingIdentifiersError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)


class TestHintLedgerError:
    """Tests for base HintLedgerError."""

    def test_is_exception(self):
        """HintLedgerError is a subclass of Exception."""
        assert issubclass(HintLedgerError, Exception)

    @pytest.mark.parametrize(
        "exc_type",
        [
            ValidationError,
            MissingIdentifiersError,
            InsufficientBalanceError,
            HintGenerationFailedError,
            GatewayRejectedError,
            InvoiceNotFoundError,
            TransientError,
            UnauthorizedError,
            ConcurrencyError,
        ],
    )
    def test_domain_errors_share_base(self, exc_type):
        """Every domain error can be caught as HintLedgerError."""
        assert issubclass(exc_type, HintLedgerError)

    def test_configuration_error_is_separate(self):
        """Configuration problems are not domain errors."""
        assert not issubclass(ConfigurationError, HintLedgerError)


class TestInsufficientBalanceError:
    """Tests for InsufficientBalanceError."""

    def test_attributes(self):
        """Exception carries the balances seen."""
        exc = InsufficientBalanceError("acct-1", daily_available=0, bonus_hints=0)
        assert exc.account_id == "acct-1"
        assert exc.daily_available == 0
        assert exc.bonus_hints == 0

    def test_message_format(self):
        """Message names the account."""
        assert "acct-1" in str(InsufficientBalanceError("acct-1", 0, 0))


class TestMissingIdentifiersError:
    def test_is_validation_error(self):
        """Missing webhook ids are a validation failure."""
        exc = MissingIdentifiersError()
        assert isinstance(exc, ValidationError)
        assert "identifiers" in exc.message


class TestGatewayRejectedError:
    def test_status_code_optional(self):
        """Status code is kept when the gateway answered."""
        assert GatewayRejectedError("nope").status_code is None
        assert GatewayRejectedError("nope", status_code=401).status_code == 401

    def test_message_format(self):
        assert "nope" in str(GatewayRejectedError("nope"))


class TestInvoiceNotFoundError:
    def test_attributes(self):
        """Both lookup keys are reported."""
        exc = InvoiceNotFoundError(gateway_id="90001", local_id=None)
        assert exc.gateway_id == "90001"
        assert exc.local_id is None
        assert "90001" in str(exc)


class TestMessages:
    @pytest.mark.parametrize(
        ("exc", "prefix"),
        [
            (ValidationError("bad"), "Validation failed"),
            (HintGenerationFailedError("timed out"), "Hint generation failed"),
            (TransientError("retry later"), "Transient failure"),
            (UnauthorizedError("bad signature"), "Unauthorized"),
            (ConcurrencyError("accounts"), "Concurrent modification"),
        ],
    )
    def test_prefix(self, exc, prefix):
        assert str(exc).startswith(prefix)
