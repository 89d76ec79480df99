# models.py
# Records shared with the bin devices through MongoDB, plus the session phases.
# MongoDB is schemaless; these classes pin down the fields the session core reads and writes.

import enum
from dataclasses import dataclass
from typing import Any, Optional

from util import as_utc, normalize_waste_type

BINS = 'bins'
WASTE_EVENTS = 'waste_events'
WRONG_CLASSIFICATIONS = 'wrong_classifications'
ALERTS = 'alerts'
USERS = 'users'

GUEST_ROLE = 'guest'
ADMIN_ROLE = 'admin'


class EventOrigin(str, enum.Enum):
    DEVICE = 'device'  # written by the bin's classifier
    ECHO = 'echo'  # mirrored by a session after accepting an item


class LeaseResult(str, enum.Enum):
    GRANTED = 'granted'
    OCCUPIED = 'occupied'


class SessionPhase(str, enum.Enum):
    CHECKING = 'checking'
    OCCUPIED = 'occupied'
    WAITING = 'waiting'
    CONFIRMATION = 'confirmation'
    CORRECTION = 'correction'
    SUMMARY = 'summary'
    AWARDED = 'awarded'
    CLOSED = 'closed'
    ERROR = 'error'

    @property
    def is_terminal(self):
        return self in (SessionPhase.AWARDED, SessionPhase.CLOSED, SessionPhase.ERROR)

    @property
    def is_active(self):
        """Phases during which listeners, heartbeat and inactivity timer run."""
        return self in (SessionPhase.WAITING, SessionPhase.CONFIRMATION, SessionPhase.CORRECTION)


@dataclass
class Bin:
    key: Any  # MongoDB _id
    bin_id: str
    active_user: bool = False
    current_user: Optional[str] = None
    last_activity: Any = None  # aware datetime
    status: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[Any] = None

    @classmethod
    def from_document(cls, doc):
        return cls(
            key=doc['_id'],
            bin_id=doc.get('bin_id') or str(doc['_id']),
            active_user=bool(doc.get('active_user', False)),
            current_user=doc.get('current_user'),
            last_activity=as_utc(doc.get('last_activity')),
            status=doc.get('status'),
            location=doc.get('location'),
            capacity=doc.get('capacity'),
        )

    def lease_age(self, now):
        if self.last_activity is None:
            return None
        return (now - self.last_activity).total_seconds()


@dataclass
class WasteEvent:
    bin_id: str
    waste_type: str
    origin: EventOrigin
    timestamp: Any = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    points_earned: Optional[int] = None
    confidence: Optional[float] = None
    id: Any = None

    @classmethod
    def from_document(cls, doc):
        origin = doc.get('origin')
        if origin is None:
            # Records written before the origin tag existed: only session echoes carry a user_id
            origin = EventOrigin.ECHO if doc.get('user_id') else EventOrigin.DEVICE
        return cls(
            bin_id=doc.get('bin_id'),
            waste_type=doc.get('waste_type'),
            origin=EventOrigin(origin),
            timestamp=as_utc(doc.get('timestamp')),
            user_id=doc.get('user_id'),
            session_id=doc.get('session_id'),
            points_earned=doc.get('points_earned'),
            confidence=doc.get('confidence'),
            id=doc.get('_id'),
        )

    @classmethod
    def echo(cls, bin_id, waste_type, user_id, session_id, timestamp):
        return cls(
            bin_id=bin_id,
            waste_type=normalize_waste_type(waste_type),
            origin=EventOrigin.ECHO,
            timestamp=timestamp,
            user_id=user_id,
            session_id=session_id,
            points_earned=1,
        )

    @property
    def is_device_event(self):
        return self.origin is EventOrigin.DEVICE

    def to_document(self):
        doc = {
            'bin_id': self.bin_id,
            'waste_type': self.waste_type,
            'origin': self.origin.value,
            'timestamp': self.timestamp,
        }
        for name in ('user_id', 'session_id', 'points_earned', 'confidence'):
            value = getattr(self, name)
            if value is not None:
                doc[name] = value
        return doc


@dataclass
class WrongClassification:
    id: Any
    bin_id: str
    model_classification_waste_type: Optional[str] = None
    confidence: Optional[float] = None
    user_answered: bool = False
    user_classified_type: Optional[str] = None
    auto_resolved: bool = False

    @classmethod
    def from_document(cls, doc):
        return cls(
            id=doc['_id'],
            bin_id=doc.get('bin_id'),
            model_classification_waste_type=doc.get('model_classification_waste_type'),
            confidence=doc.get('confidence'),
            user_answered=bool(doc.get('user_answered', False)),
            user_classified_type=doc.get('user_classified_type'),
            auto_resolved=bool(doc.get('auto_resolved', False)),
        )

    def to_view(self):
        return {
            'id': str(self.id),
            'bin_id': self.bin_id,
            'model_classification_waste_type': self.model_classification_waste_type,
            'confidence': self.confidence,
        }


@dataclass
class CorrectionAlert:
    """Record left for administrators when a user corrects an identification."""
    bin_id: str
    original_waste_type: str
    corrected_waste_type: str
    user_id: Optional[str]
    timestamp: Any
    issue_type: str = 'identification_error'
    resolved: bool = False

    @property
    def description(self):
        return (f"User corrected identification from {self.original_waste_type} "
                f"to {self.corrected_waste_type}")

    def to_document(self):
        doc = {
            'bin_id': self.bin_id,
            'original_waste_type': self.original_waste_type,
            'corrected_waste_type': self.corrected_waste_type,
            'issue_type': self.issue_type,
            'description': self.description,
            'timestamp': self.timestamp,
            'user_id': self.user_id,
            'resolved': self.resolved,
        }
        return doc
