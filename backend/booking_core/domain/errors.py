class DomainError(Exception):
    """Base class for every error the booking core reports to its callers."""


class ValidationError(DomainError):
    """Input has the wrong shape: inverted or past window, blank key, missing contact."""


class SlotUnavailableError(DomainError):
    """Capacity for the requested window was exhausted at write time."""


class ReservationExpiredError(DomainError):
    """Reservation is gone or past expires_at. Missing and expired are reported alike."""


class NotFoundError(DomainError):
    pass


class ConflictError(DomainError):
    """Optimistic lock mismatch; carries the version currently stored."""

    def __init__(self, message: str, *, current_version: int) -> None:
        super().__init__(message)
        self.current_version = current_version


class InvalidTransitionError(DomainError):
    pass


class InvalidTokenError(DomainError):
    """Guest credentials (booking reference plus cancellation token) do not match."""
