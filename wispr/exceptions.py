"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes; routes map them to HTTP responses.
"""


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class HintLedgerError(Exception):
    """Base exception for all hint ledger errors."""

    pass


class ValidationError(HintLedgerError):
    """Raised when caller input is missing or malformed (before any I/O)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation failed: {message}")


class MissingIdentifiersError(ValidationError):
    """Raised when a webhook payload carries neither a gateway nor a local invoice id."""

    def __init__(self) -> None:
        super().__init__("webhook payload has no invoice identifiers")


class InsufficientBalanceError(HintLedgerError):
    """Raised when an account has no daily or bonus hints left to spend."""

    def __init__(self, account_id: str, daily_available: int, bonus_hints: int) -> None:
        self.account_id = account_id
        self.daily_available = daily_available
        self.bonus_hints = bonus_hints
        super().__init__(
            f"Insufficient hints for {account_id}. "
            f"Daily available: {daily_available}, Bonus: {bonus_hints}"
        )


class HintGenerationFailedError(HintLedgerError):
    """Raised when the AI collaborator fails or returns nothing usable."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Hint generation failed: {message}")


class GatewayRejectedError(HintLedgerError):
    """Raised when the payment gateway returns a non-success response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Payment gateway rejected request: {message}")


class InvoiceNotFoundError(HintLedgerError):
    """Raised when no PENDING invoice matches a webhook (benign, idempotent no-op)."""

    def __init__(self, gateway_id: str | None, local_id: str | None) -> None:
        self.gateway_id = gateway_id
        self.local_id = local_id
        super().__init__(f"Invoice not found: gateway_id={gateway_id}, local_id={local_id}")


class TransientError(HintLedgerError):
    """Raised on timeouts or exhausted transaction retries - safe to retry later."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Transient failure: {message}")


class UnauthorizedError(HintLedgerError):
    """Raised when a webhook signature or bearer credential does not verify."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unauthorized: {message}")


class ConcurrencyError(HintLedgerError):
    """Raised when an optimistic-concurrency conflict is detected at commit."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")
