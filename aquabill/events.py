"""Change notification for presentation layers and the notification service.

Services publish after their transaction commits, so subscribers only ever
see committed state. Subscribers run synchronously; one that raises is
logged and skipped so delivery problems never undo a billing operation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from threading import RLock
from collections import defaultdict
from typing import Callable, Dict, List, Type
import logging

from aquabill.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Event:
    occurred_at: datetime = field(default_factory=utcnow, init=False)


@dataclass
class NewBillCreated(Event):
    flat_id: int
    bill_id: int
    amount: Decimal


@dataclass
class MessageUnread(Event):
    flat_id: int
    count: int


@dataclass
class EntityChanged(Event):
    entity: str        # property | flat | account | bill | payment
    entity_id: object
    action: str        # created | updated | deleted


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Handler]] = defaultdict(list)
        self._lock = RLock()

    def subscribe(self, event_type: Type[Event], handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` and its subclasses.

        Returns a callable that removes the subscription.
        """
        with self._lock:
            self._subscribers[event_type].append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._subscribers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = [
                h
                for event_type, subscribed in self._subscribers.items()
                if isinstance(event, event_type)
                for h in subscribed
            ]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler {handler!r} failed for {type(event).__name__}: {e}")

    def changed(self, entity: str, entity_id, action: str) -> None:
        self.publish(EntityChanged(entity=entity, entity_id=entity_id, action=action))
