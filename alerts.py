import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from errors import StoreError
from models import PriceAlert

logger = logging.getLogger(__name__)

ROSE_ABOVE = "rose above"
FELL_BELOW = "fell below"


@dataclass(frozen=True)
class AlertFired:
    pool_id: str
    alert: PriceAlert
    direction: str
    price: Decimal


def crossing(last_price: Optional[Decimal], new_price: Decimal, target: Decimal) -> Optional[str]:
    """Direction in which new_price crossed target coming from last_price, if it did."""
    if last_price is None:
        return None
    if last_price < target <= new_price:
        return ROSE_ABOVE
    if last_price > target >= new_price:
        return FELL_BELOW
    return None


class AlertEvaluator:
    """
    One-shot price alerts per pool.

    A fired alert leaves the active set and is marked triggered in the store
    before evaluate() returns, so the caller notifies only after the trigger
    is persisted.
    """

    def __init__(self, store=None):
        self.store = store
        self._active: Dict[str, List[PriceAlert]] = {}

    def load(self, pool_id: str):
        if self.store is not None:
            self._active[pool_id] = self.store.get_alerts(pool_id)

    def add(self, pool_id: str, target_price: Decimal, chat_id: int) -> PriceAlert:
        alert = PriceAlert(Decimal(target_price), chat_id)
        if self.store is not None:
            alert.id = self.store.add_alert(pool_id, alert)
        self._active.setdefault(pool_id, []).append(alert)
        return alert

    def active(self, pool_id: str) -> List[PriceAlert]:
        return list(self._active.get(pool_id, []))

    def evaluate(self, pool_id: str, last_price: Optional[Decimal], new_price: Decimal) -> List[AlertFired]:
        fired = []
        remaining = []
        for alert in self._active.get(pool_id, []):
            direction = crossing(last_price, new_price, alert.target_price)
            if direction is None:
                remaining.append(alert)
                continue
            alert.triggered = True
            fired.append(AlertFired(pool_id, alert, direction, new_price))
        if not fired:
            return fired

        self._active[pool_id] = remaining
        if self.store is not None:
            for event in fired:
                if event.alert.id is None:
                    continue
                try:
                    self.store.mark_alert_triggered(event.alert.id)
                except StoreError as e:
                    logger.error(f"Could not persist triggered alert {event.alert.id} on {pool_id}: {e}")
        logger.info(f"{len(fired)} price alert(s) fired on {pool_id} at {new_price}")
        return fired

    def clear(self, pool_id: str, chat_id: Optional[int] = None):
        """Drop the pool's alerts, or only those of one chat."""
        if chat_id is None:
            self._active.pop(pool_id, None)
        else:
            self._active[pool_id] = [a for a in self._active.get(pool_id, []) if a.chat_id != chat_id]
        if self.store is not None:
            self.store.delete_alerts(pool_id, chat_id)
