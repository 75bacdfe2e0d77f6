"""
Event System Module

Publish/subscribe dispatcher for transaction lifecycle events and the
operational alerts raised when balances may need manual reconciliation.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .logging_config import log_action


class DomainEvent(Enum):
    """Domain events emitted by the transaction core"""

    # Transaction lifecycle
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_FAILED = "transaction.failed"
    TRANSACTION_COMPENSATED = "transaction.compensated"

    # Alerts
    RECONCILIATION_REQUIRED = "transaction.reconciliation_required"
    LEDGER_WRITE_FAILED = "ledger.write_failed"


ALERT_EVENTS = (DomainEvent.RECONCILIATION_REQUIRED, DomainEvent.LEDGER_WRITE_FAILED)


@dataclass
class EventPayload:
    """A transaction lifecycle fact published to subscribers"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form of the event"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("transaction_core.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Register a handler for one event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Register a handler for every event type"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Remove a handler registered with subscribe()"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Deliver to type subscribers then catch-all subscribers; handler errors are logged, never raised"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(
            f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}"
        )
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # A failing subscriber must not fail the money movement
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} "
                    f"for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Drop every subscription"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Handlers for one event type, or all subscriptions including catch-alls"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class ReconciliationAlerter:
    """
    Operational alert sink for transactions whose balances could not be
    resolved automatically.

    Every alert is logged at CRITICAL with the transaction id and the applied
    account versions, and kept until acknowledged so an operator (or a test)
    can list what is outstanding.
    """

    def __init__(self, dispatcher: EventDispatcher):
        self._alerts: Dict[str, EventPayload] = {}
        self._lock = RLock()
        self.logger = logging.getLogger("transaction_core.alerts")
        for event_type in ALERT_EVENTS:
            dispatcher.subscribe(event_type, self.handle)

    def handle(self, event: EventPayload) -> None:
        with self._lock:
            self._alerts[event.entity_id] = event
        log_action(
            self.logger, "critical",
            f"Manual reconciliation required: {event.data.get('reason', event.event_type.value)}",
            action=event.event_type.value,
            resource=f"{event.entity_type}:{event.entity_id}",
            extra=event.data
        )

    def open_alerts(self) -> List[EventPayload]:
        with self._lock:
            return list(self._alerts.values())

    def acknowledge(self, transaction_id: str) -> bool:
        """Drop an alert once an operator has reconciled the transaction"""
        with self._lock:
            return self._alerts.pop(transaction_id, None) is not None
