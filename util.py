# util.py
# Small helpers shared by the session core

import secrets
import time
from datetime import datetime, timezone

WASTE_TYPES = ('plastic', 'glass', 'metal', 'other')

# Device and legacy spellings folded into the four session buckets
_WASTE_TYPE_ALIASES = {
    'plastic': 'plastic',
    'glass': 'glass',
    'metal': 'metal',
    'aluminum': 'metal',
    'aluminium': 'metal',
}


def normalize_waste_type(waste_type):
    """Map a reported waste type onto one of plastic, glass, metal or other."""
    if not waste_type:
        return 'other'
    return _WASTE_TYPE_ALIASES.get(str(waste_type).strip().lower(), 'other')


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_session_id(now=None):
    millis = int((now.timestamp() if now else time.time()) * 1000)
    return f"session_{millis}_{secrets.token_hex(5)[:9]}"


def isoformat(value):
    return value.isoformat() if value else None
