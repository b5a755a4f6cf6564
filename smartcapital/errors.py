"""
Exception hierarchy shared by the conversation and alert engines.
"""


class SmartCapitalError(Exception):
    """Base class for application errors."""

    pass


class ValidationError(SmartCapitalError):
    """Raised when user-supplied input fails validation."""

    pass


class QuantityValidationError(ValidationError):
    """Raised when a share quantity is malformed or out of range."""

    pass


class AlertValidationError(ValidationError):
    """Raised when a price alert is missing a field its type requires."""

    pass


class CollaboratorUnavailableError(SmartCapitalError):
    """Raised when an external collaborator cannot answer in time."""

    pass


class QuoteUnavailableError(CollaboratorUnavailableError):
    """Raised when no quote can be obtained for a symbol."""

    def __init__(self, symbol: str, reason: str = "no data available"):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Quote unavailable for {symbol}: {reason}")


class PersistenceError(SmartCapitalError):
    """Raised when a store write fails."""

    pass
