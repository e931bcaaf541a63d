"""Base classes for the settlement domain.

Aggregates carry identity, a version counter and a buffer of domain
events that the application layer drains after persisting them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar
from uuid import UUID, uuid4


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# Value Object Base
# ============================================================================


@dataclass(frozen=True)
class ValueObject(ABC):
    """Immutable object compared by its attributes."""

    pass


# ============================================================================
# Aggregate Root Base
# ============================================================================


@dataclass(kw_only=True)
class AggregateRoot(ABC):
    """Base class for aggregate roots.

    Aggregates are compared by ``id``. Mutating methods call ``_touch``
    and record events describing what changed.

    Attributes:
        id: Unique identifier of the aggregate.
        version: Incremented on every mutation.
        created_at: Creation timestamp.
        updated_at: Timestamp of last modification.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    version: int = field(default=1, compare=False)
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)
    _events: list["DomainEvent"] = field(
        default_factory=list,
        init=False,
        repr=False,
        compare=False,
    )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, self.__class__):
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def _record_event(self, event: "DomainEvent") -> None:
        self._events.append(event)

    def collect_events(self) -> list["DomainEvent"]:
        """Drain recorded events.

        Returns:
            Events recorded since the last collection, oldest first.
        """
        events = self._events.copy()
        self._events.clear()
        return events

    def _touch(self) -> None:
        self.updated_at = utc_now()
        self.version += 1


# ============================================================================
# Domain Event Base
# ============================================================================


@dataclass(frozen=True)
class DomainEvent(ABC):
    """Something significant that happened to an aggregate.

    Attributes:
        event_id: Unique identifier for this event instance.
        event_type: Dotted event name, set by each subclass.
        occurred_at: When the event happened.
        aggregate_id: ID of the aggregate that emitted the event.
        aggregate_type: Type name of the aggregate.
    """

    event_type: ClassVar[str]

    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=utc_now)
    aggregate_id: str = field(default="")
    aggregate_type: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the event envelope and its payload."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "payload": self._payload(),
        }

    @abstractmethod
    def _payload(self) -> dict[str, Any]:
        pass
