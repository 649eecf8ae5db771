from __future__ import annotations

from typing import Mapping, Sequence


class TripLedgerError(Exception):
    """Base class for every recoverable engine error."""


class ValidationError(TripLedgerError, ValueError):
    """Raised when submitted data is missing or invalid.

    ``errors`` maps the offending field name to a human-readable message so the
    same result can be rendered next to form inputs or returned by the API.
    """

    def __init__(self, errors: Mapping[str, str], message: str | None = None):
        self.errors = dict(errors)
        if message is None:
            message = "; ".join(f"{field}: {text}" for field, text in self.errors.items())
        super().__init__(message)


class GatingError(TripLedgerError):
    """Raised when a workflow step cannot proceed."""

    def __init__(self, step_id: str, unmet: Sequence[str]):
        self.step_id = step_id
        self.unmet = list(unmet)
        super().__init__(f"Cannot proceed from step '{step_id}': " + "; ".join(self.unmet))


class TripPermissionError(TripLedgerError):
    """Raised when the acting user's role does not allow the operation."""

    def __init__(self, action: str, role: str):
        self.action = action
        self.role = role
        super().__init__(f"Role '{role}' is not allowed to {action}")


class ConfirmationMismatchError(ValidationError):
    def __init__(self, expected: str):
        self.expected = expected
        super().__init__({"confirmation": f'Please type "{expected}" to confirm deletion'})


class NoChangeError(ValidationError):
    def __init__(self) -> None:
        super().__init__({"general": "No changes detected. Please make changes before saving."})


class TripNotFoundError(TripLedgerError, LookupError):
    def __init__(self, trip_id: str):
        self.trip_id = trip_id
        super().__init__(f"Trip not found: {trip_id}")
