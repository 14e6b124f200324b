"""
Diffusion temps réel : abonnements par collection (+ filtre d'égalité optionnel).

Les services publient après chaque écriture ; les dashboards ouverts reçoivent
{table, eventType, old, new} via WebSocket. Livraison best-effort, sans
garantie d'ordre vis-à-vis des lectures directes.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None]]

EVENT_TYPES = ("insert", "update", "delete")


@dataclass
class Subscription:
    handle:   str
    table:    str
    on_event: EventHandler
    filter:   dict[str, Any] = field(default_factory=dict)

    def matches(self, row: Optional[dict]) -> bool:
        if not self.filter:
            return True
        if not row:
            return False
        return all(row.get(k) == v for k, v in self.filter.items())


class RealtimeHub:
    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        table: str,
        on_event: EventHandler,
        filter: Optional[dict] = None,
    ) -> str:
        handle = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[handle] = Subscription(handle, table, on_event, filter or {})
        logger.debug(f"Abonnement {handle} sur {table} filtre={filter}")
        return handle

    def unsubscribe(self, handle: str) -> bool:
        return self._subscriptions.pop(handle, None) is not None

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions.values() if s.table == table)

    async def publish(
        self,
        table: str,
        event_type: str,
        old: Optional[dict] = None,
        new: Optional[dict] = None,
    ) -> int:
        """Pousse l'événement aux abonnés concernés ; retourne le nombre de livraisons."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event = {"table": table, "eventType": event_type, "old": old, "new": new}
        row = old if event_type == "delete" else new
        delivered = 0
        # Copie : un handler peut se désabonner pendant la diffusion
        for sub in list(self._subscriptions.values()):
            if sub.table != table or not sub.matches(row):
                continue
            try:
                await sub.on_event(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Abonné {sub.handle} en échec sur {table}: {e}")
        return delivered


hub = RealtimeHub()
