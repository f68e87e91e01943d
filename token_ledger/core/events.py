"""
Balance-change events and the best-effort side channel.

Everything dispatched here runs after the ledger transaction committed;
a failure is logged and never reaches the caller.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

BALANCE_UPDATED_TOPIC = "token:balance:updated"


class EventBus(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class LocalEventBus:
    """In-process publish/subscribe bus."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        self._handlers[topic].append(handler)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        # Payloads are not retained; only subscribers see them
        for handler in list(self._handlers.get(topic, ())):
            handler(payload)


def balance_payload(user_id: str, balance: int, consumed: Optional[int] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"userId": user_id, "balance": balance}
    if consumed is not None:
        payload["consumed"] = consumed
    return payload


class BestEffortDispatcher:
    """Runs side effects whose failure must not fail the parent operation."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus

    def run(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            logger.warning("Best-effort side effect %r failed", name, exc_info=True)
            return None

    def publish_balance(self, user_id: str, balance: int, consumed: Optional[int] = None) -> None:
        if self.event_bus is None:
            return
        self.run(
            BALANCE_UPDATED_TOPIC,
            self.event_bus.publish,
            BALANCE_UPDATED_TOPIC,
            balance_payload(user_id, balance, consumed),
        )
