# session_accumulator.py

from dataclasses import dataclass
from types import MappingProxyType

from util import WASTE_TYPES, isoformat, normalize_waste_type


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    counts: MappingProxyType
    points: int
    started_at: object
    last_item_at: object
    duration_seconds: int

    @property
    def total_items(self):
        return sum(self.counts.values())

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'counts': dict(self.counts),
            'points': self.points,
            'started_at': isoformat(self.started_at),
            'last_item_at': isoformat(self.last_item_at),
            'duration_seconds': self.duration_seconds,
        }


class SessionAccumulator:
    """Counts and points for one continuous occupancy. One point per accepted item."""

    def __init__(self, session_id, started_at):
        self.session_id = session_id
        self.counts = {waste_type: 0 for waste_type in WASTE_TYPES}
        self.points = 0
        self.started_at = started_at
        self.last_item_at = started_at

    def add_item(self, waste_type, now):
        bucket = normalize_waste_type(waste_type)
        self.counts[bucket] += 1
        self.points += 1
        self.last_item_at = now
        return bucket

    def snapshot(self, now):
        return SessionSnapshot(
            session_id=self.session_id,
            counts=MappingProxyType(dict(self.counts)),
            points=self.points,
            started_at=self.started_at,
            last_item_at=self.last_item_at,
            duration_seconds=max(0, int((now - self.started_at).total_seconds())),
        )
