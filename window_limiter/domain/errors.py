"""Exception hierarchy raised by the window limiter and its store clients."""

from __future__ import annotations


class LimiterError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(LimiterError, ValueError):
    """Raised while constructing a limiter with unusable configuration."""


class MissingStore(ConfigurationError):
    """No ordered event store was supplied to the limiter."""

    def __init__(self) -> None:
        super().__init__("an ordered event store is required")


class InvalidWindow(ConfigurationError):
    """Window length is not a positive number of milliseconds."""

    def __init__(self, value: object) -> None:
        super().__init__(f"window_ms must be a positive number, got {value!r}")
        self.value = value


class InvalidBudget(ConfigurationError):
    """Budget is not a positive integer."""

    def __init__(self, value: object) -> None:
        super().__init__(f"budget must be a positive integer, got {value!r}")
        self.value = value


class MissingIdentifier(LimiterError, ValueError):
    """``consume`` was called without an identifier."""

    def __init__(self) -> None:
        super().__init__("identifier is required")


class InvalidIdentifierType(LimiterError, TypeError):
    """``consume`` was called with an identifier that is not a string."""

    def __init__(self, value: object) -> None:
        super().__init__(f"identifier must be a string, got {type(value).__name__}")
        self.value = value


class StoreError(LimiterError):
    """Base class for ordered event store failures."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or rejected an operation."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        message = f"store operation {operation!r} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation


class AtomicAdmitUnsupported(LimiterError):
    """The store cannot run the atomic admission step (e.g. scripting disabled)."""
