"""Contracts for the services the engine relies on but does not implement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .core import Invoice, Trip


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str


TripListener = Callable[[str, Optional[Trip]], None]


class TripStore(Protocol):
    """Persistence for trips and their costs; serialises writes per trip id."""

    def load_trip(self, trip_id: str) -> Trip:
        ...

    def save_trip(self, trip: Trip) -> None:
        ...

    def delete_trip(self, trip_id: str) -> None:
        ...

    def subscribe(self, listener: TripListener) -> Callable[[], None]:
        ...


class AttachmentStorage(Protocol):
    def store(self, trip_id: str, cost_entry_id: str, filename: str, content: bytes) -> str:
        ...

    def list(self, cost_entry_id: str) -> List[str]:
        ...


class IdentityProvider(Protocol):
    def current_user(self) -> Actor:
        ...


class PaymentNotifier(Protocol):
    """Outbound reminders and collections escalations (email, SMS, ...)."""

    def send_reminder(self, invoice: Invoice, message: str) -> None:
        ...

    def escalate(self, invoice: Invoice, message: str) -> None:
        ...


class StaticIdentity:
    """Identity provider that always answers with the same actor."""

    def __init__(self, actor: Actor):
        self._actor = actor

    def current_user(self) -> Actor:
        return self._actor


class RecordingNotifier:
    """Notifier useful for tests and local development."""

    def __init__(self) -> None:
        self.sent: List[tuple[str, str, str]] = []

    def send_reminder(self, invoice: Invoice, message: str) -> None:
        self.sent.append(("reminder", invoice.invoice_number, message))

    def escalate(self, invoice: Invoice, message: str) -> None:
        self.sent.append(("escalation", invoice.invoice_number, message))
