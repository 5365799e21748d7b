"""
In-process publish/subscribe event bus and the engine's domain events.

Publishing is fire-and-forget: each subscriber runs in its own task, and a
failing subscriber is logged without affecting the publisher or the other
subscribers.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from orderflow.core.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineEvent:
    """Base class for all events published on the bus."""

    created_at: datetime = field(default_factory=_utcnow, kw_only=True)


@dataclass(frozen=True)
class OrderStateTransitionEvent(EngineEvent):
    order: Any
    from_state: str
    to_state: str


@dataclass(frozen=True)
class PaymentStateTransitionEvent(EngineEvent):
    order: Any
    payment: Any
    from_state: str
    to_state: str


@dataclass(frozen=True)
class RefundStateTransitionEvent(EngineEvent):
    order: Any
    refund: Any
    from_state: str
    to_state: str


@dataclass(frozen=True)
class CatalogModificationEvent(EngineEvent):
    entity: str
    entity_id: str


@dataclass(frozen=True)
class TaxRateModificationEvent(EngineEvent):
    tax_rate_id: Optional[str] = None


@dataclass(frozen=True)
class PromotionModificationEvent(EngineEvent):
    promotion_id: Optional[str] = None


E = TypeVar("E", bound=EngineEvent)
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """
    Publish/subscribe channel keyed by event type.

    Subscribers registered for a base class receive its subclasses too.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self, event_type: type[E], handler: Callable[[E], Any]
    ) -> Callable[[], None]:
        """
        Register a handler for an event type.

        Returns:
            Callable that removes the subscription
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: EngineEvent) -> None:
        """
        Publish an event to every matching subscriber without waiting.

        Must be called from within a running event loop.
        """
        handlers = [
            handler
            for event_type, registered in self._handlers.items()
            if isinstance(event, event_type)
            for handler in registered
        ]
        if not handlers:
            return

        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._dispatch(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.debug(
            "Event published",
            event_type=type(event).__name__,
            subscriber_count=len(handlers),
        )

    async def drain(self) -> None:
        """Wait until every in-flight subscriber task has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _dispatch(self, handler: EventHandler, event: EngineEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error(
                "Event subscriber failed",
                event_type=type(event).__name__,
                handler=getattr(handler, "__qualname__", repr(handler)),
                exc_info=True,
            )
