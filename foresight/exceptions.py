"""Domain-specific exceptions for the Foresight services."""

class ValidationError(ValueError):
    """Raised when provided data does not meet validation requirements."""


class RecordNotFoundError(LookupError):
    """Raised when a record cannot be located for the requesting user."""


class PersistenceError(IOError):
    """Raised when the persistence layer encounters unrecoverable issues."""


class AuthenticationError(PermissionError):
    """Raised when a protected operation is attempted without a user id."""


class MarketDataError(RuntimeError):
    """Raised when a market-data provider cannot serve a request."""
