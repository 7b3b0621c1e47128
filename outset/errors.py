"""
Exception taxonomy for outset.

Only configuration errors are allowed to escape a category run. Everything
else is recorded (units), collected (registrations) or logged (ledger).
"""


class OutsetError(Exception):
    """Base class for all outset errors."""
    pass


class ConfigurationError(OutsetError):
    """Invalid root, unknown category or a category run in the wrong context."""
    pass


class InvalidRoot(ConfigurationError):
    """Raised when the queue root does not exist or is not a directory."""
    pass


class CategoryNotFound(ConfigurationError):
    """Raised when a category name does not match any known category."""
    pass


class ContextMismatch(ConfigurationError):
    """Raised when a category is run from a privilege context that does not own it."""
    pass


class RegistrationError(OutsetError):
    """Raised when a single service descriptor could not be registered."""

    def __init__(self, label: str, message: str):
        self.label = label
        super().__init__(f"{label}: {message}")


class LedgerError(OutsetError):
    """Raised when the run-state ledger cannot be read or written."""
    pass


class UnitExecutionError(OutsetError):
    """Raised when a unit could not be launched or exited non-zero."""

    def __init__(self, message: str, returncode=None):
        self.returncode = returncode
        super().__init__(message)
