from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional

from models import PositionSnapshot


class ChangeType(Enum):
    NEW = "new"
    REMOVED = "removed"
    RANGE_CHANGE = "range_change"
    STAKE_CHANGE = "stake_change"


@dataclass(frozen=True)
class PositionChange:
    type: ChangeType
    position_id: str
    previous: Optional[PositionSnapshot] = None
    current: Optional[PositionSnapshot] = None


class PositionLifecycleTracker:
    """Diffs two position snapshot lists; dust positions count as absent."""

    def __init__(self, dust_threshold: Decimal = Decimal('0.1')):
        self.dust_threshold = Decimal(dust_threshold)

    def is_dust(self, snapshot: PositionSnapshot) -> bool:
        return snapshot.value < self.dust_threshold

    def filter_dust(self, snapshots: Iterable[PositionSnapshot]) -> List[PositionSnapshot]:
        return [s for s in snapshots if not self.is_dust(s)]

    def diff(self, previous: Iterable[PositionSnapshot], current: Iterable[PositionSnapshot]) -> List[PositionChange]:
        before = {s.id: s for s in self.filter_dust(previous)}
        after = {s.id: s for s in self.filter_dust(current)}

        changes = []
        for key, snapshot in after.items():
            old = before.get(key)
            if old is None:
                changes.append(PositionChange(ChangeType.NEW, key, None, snapshot))
                continue
            if old.in_range != snapshot.in_range:
                changes.append(PositionChange(ChangeType.RANGE_CHANGE, key, old, snapshot))
            if old.staked != snapshot.staked:
                changes.append(PositionChange(ChangeType.STAKE_CHANGE, key, old, snapshot))

        for key, snapshot in before.items():
            if key not in after:
                changes.append(PositionChange(ChangeType.REMOVED, key, snapshot, None))
        return changes
