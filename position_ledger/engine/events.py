"""
Domain Events

The engine publishes an event after each committed mutation. Delivery runs on
a worker pool so the engine never waits on a subscriber; subscriber errors
are logged and dropped.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    portfolio_id: str
    ticker: Optional[str]
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class PositionOpened(DomainEvent):
    shares: Decimal = Decimal('0')
    price_per_share: Decimal = Decimal('0')


@dataclass(frozen=True)
class SharesBought(DomainEvent):
    shares: Decimal = Decimal('0')
    price_per_share: Decimal = Decimal('0')
    average_cost_basis: Decimal = Decimal('0')


@dataclass(frozen=True)
class SharesSold(DomainEvent):
    shares: Decimal = Decimal('0')
    price_per_share: Decimal = Decimal('0')
    realized_gain_loss: Decimal = Decimal('0')


@dataclass(frozen=True)
class PositionClosed(DomainEvent):
    realized_gain_loss: Decimal = Decimal('0')


@dataclass(frozen=True)
class DividendReceived(DomainEvent):
    amount: Decimal = Decimal('0')


@dataclass(frozen=True)
class PriceUpdated(DomainEvent):
    price: Decimal = Decimal('0')
    current_value: Decimal = Decimal('0')


Handler = Callable[[DomainEvent], None]


class EventDispatcher:
    """
    Publish/subscribe hub for domain events.

    Handlers subscribed to a base class receive all of its subclasses, so
    subscribing to DomainEvent receives everything.
    """

    def __init__(self, max_workers: int = 2):
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ledger-events")

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler):
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: Handler):
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def _handlers_for(self, event: DomainEvent) -> List[Handler]:
        with self._lock:
            matched = []
            for event_type, handlers in self._handlers.items():
                if isinstance(event, event_type):
                    matched.extend(handlers)
            return matched

    def _deliver(self, handler: Handler, event: DomainEvent):
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Event handler {handler!r} failed for {type(event).__name__}: {str(e)}")

    def publish(self, event: DomainEvent) -> List[Future]:
        """
        Schedule delivery of an event to every matching handler.

        Returns:
            Futures for the scheduled deliveries (callers normally ignore them)
        """
        futures = []
        for handler in self._handlers_for(event):
            try:
                futures.append(self._executor.submit(self._deliver, handler, event))
            except RuntimeError:
                logger.warning(f"Dispatcher shut down, dropping {type(event).__name__}")
                break
        return futures

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
