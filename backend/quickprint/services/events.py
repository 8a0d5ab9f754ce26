# Overview: In-process domain event bus; publish after commit, subscribers run in order.

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from ..time_utils import utcnow

logger = logging.getLogger(__name__)

SHOP_REGISTERED = "shop.registered"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {"type": self.name, "payload": self.payload, "timestamp": self.occurred_at.isoformat()}


class EventBus:
    """
    Synchronous publish/subscribe.

    Events are published only after the transaction that produced them has
    committed. A failing subscriber is logged and does not stop the others
    or the request that published the event.
    """

    def __init__(self):
        self._handlers: dict[str, list[Callable[[DomainEvent], None]]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[[DomainEvent], None]) -> None:
        self._handlers[name].append(handler)

    def publish(self, event: DomainEvent) -> None:
        logger.info("Publishing %s", event.name)
        for handler in list(self._handlers.get(event.name, ())):
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber %r failed for %s", handler, event.name)


def log_event(event: DomainEvent) -> None:
    """Default subscriber: record the event in the application log."""
    logger.info("event=%s payload=%s", event.name, event.payload)
