"""In-process publish/subscribe for title update notifications."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TitleUpdated:
    """Emitted after every successful create or merge of a title record."""

    imdb: str | None
    id: int | None
    type: str | None
    source: str

    def as_dict(self) -> dict[str, Any]:
        return {"imdb": self.imdb, "id": self.id, "type": self.type, "source": self.source}


Subscriber = Callable[[TitleUpdated], Awaitable[None] | None]


class EventBus:
    """Fan out :class:`TitleUpdated` events to registered callbacks."""

    def __init__(self) -> None:
        self._subscribers: dict[int, Subscriber] = {}
        self._counter = 0

    def subscribe(self, callback: Subscriber) -> int:
        """Register ``callback`` and return the subscription id."""

        self._counter += 1
        self._subscribers[self._counter] = callback
        return self._counter

    def unsubscribe(self, subscription_id: int) -> None:
        self._subscribers.pop(subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: TitleUpdated) -> None:
        """Deliver ``event`` to every subscriber; callback errors are logged."""

        for callback in list(self._subscribers.values()):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Title update subscriber failed for %s", event.imdb)
