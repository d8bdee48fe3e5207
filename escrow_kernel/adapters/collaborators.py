"""
Collaborator interfaces owned by neighbouring subsystems.

ContactDirectory: the user-profile service that knows contact details.
SubscriptionDirectory: the billing service that knows each contractor's
    subscription tier.
EventPublisher: the message bus the outbox dispatches to.

Only the in-memory implementations ship with the kernel.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import UUID


class ContactDirectory(ABC):
    """Looks up the contact details disclosed on a paid connection."""

    @abstractmethod
    def contact_for(self, user_id: UUID) -> dict:
        ...


class InMemoryContactDirectory(ContactDirectory):
    def __init__(self, contacts: dict[UUID, dict] | None = None):
        self._contacts = dict(contacts or {})

    def register(self, user_id: UUID, **details) -> None:
        self._contacts[user_id] = details

    def contact_for(self, user_id: UUID) -> dict:
        return dict(self._contacts.get(user_id, {"user_id": str(user_id)}))


class SubscriptionDirectory(ABC):
    """Looks up a contractor's subscription tier (basic, pro, premium, ...)."""

    @abstractmethod
    def tier_for(self, user_id: UUID) -> str | None:
        ...


class InMemorySubscriptionDirectory(SubscriptionDirectory):
    def __init__(self, tiers: dict[UUID, str] | None = None):
        self._tiers = dict(tiers or {})

    def register(self, user_id: UUID, tier: str) -> None:
        self._tiers[user_id] = tier

    def tier_for(self, user_id: UUID) -> str | None:
        return self._tiers.get(user_id)


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event_type: str, payload: dict) -> None:
        """Deliver one event.  Raising leaves the outbox row undispatched."""


@dataclass
class InMemoryEventPublisher(EventPublisher):
    published: list[tuple[str, dict]] = field(default_factory=list)

    def publish(self, event_type: str, payload: dict) -> None:
        self.published.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict]:
        return [payload for kind, payload in self.published if kind == event_type]
