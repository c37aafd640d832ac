"""
Typed records for the backend tables and the values derived from them.

Rows travel over the wire with their column names (firebase_uid, owner_uid,
updated_at, ...), both in API responses and in change-feed events.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

# ===================
# Constants
# ===================

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'

TABLE_LIVE_LOCATIONS = 'live_locations'
TABLE_LOCATION_SHARES = 'location_shares'

EVENT_INSERT = 'INSERT'
EVENT_UPDATE = 'UPDATE'
EVENT_DELETE = 'DELETE'

# Socket.IO event name carrying every change
CHANGE_EVENT = 'change'


def utcnow():
    return datetime.now(timezone.utc)


def parse_timestamp(ts):
    """Parse an ISO timestamp into an aware UTC datetime (None passes through)."""
    if ts is None or isinstance(ts, datetime):
        if ts is not None and ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts
    value = str(ts)
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ===================
# Table Records
# ===================


@dataclass
class User:
    """A signed-in identity, keyed by the identity provider's uid."""

    id: str
    name: str
    email: str

    @classmethod
    def from_json(cls, data: dict) -> 'User':
        return cls(
            id=data.get('id') or data.get('firebase_uid'),
            name=data.get('name') or '',
            email=data.get('email') or '',
        )

    def to_json(self) -> dict:
        return {'id': self.id, 'name': self.name, 'email': self.email}


@dataclass
class LiveLocation:
    """A user's current position. At most one per user."""

    owner_id: str
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None

    @classmethod
    def from_json(cls, data: dict) -> 'LiveLocation':
        return cls(
            owner_id=data['firebase_uid'],
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            updated_at=parse_timestamp(data.get('updated_at')),
        )


@dataclass
class ShareLink:
    """A directed visibility request: viewer asks to see owner."""

    id: int
    owner_id: str
    viewer_id: str
    status: str

    @classmethod
    def from_json(cls, data: dict) -> 'ShareLink':
        return cls(
            id=int(data['id']),
            owner_id=data['owner_uid'],
            viewer_id=data['viewer_uid'],
            status=data['status'],
        )

    @property
    def approved(self) -> bool:
        return self.status == STATUS_APPROVED


# ===================
# Derived Records
# ===================


@dataclass
class Connection:
    """A ShareLink seen from one side, with the other party resolved."""

    share: ShareLink
    user: User

    @classmethod
    def from_json(cls, data: dict) -> 'Connection':
        return cls(share=ShareLink.from_json(data), user=User.from_json(data['user']))


@dataclass
class Connections:
    """All links touching a user, partitioned by status and role."""

    pending_received: List[Connection] = field(default_factory=list)
    pending_sent: List[Connection] = field(default_factory=list)
    mutual: List[Connection] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> 'Connections':
        return cls(
            pending_received=[Connection.from_json(c) for c in data.get('pendingReceived', [])],
            pending_sent=[Connection.from_json(c) for c in data.get('pendingSent', [])],
            mutual=[Connection.from_json(c) for c in data.get('mutual', [])],
        )

    def friends(self) -> Dict[str, User]:
        return {c.user.id: c.user for c in self.mutual}


@dataclass
class FriendLocation:
    """A mutual friend's last known position."""

    uid: str
    name: str
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None
    stale: bool = False

    @classmethod
    def from_json(cls, data: dict) -> 'FriendLocation':
        return cls(
            uid=data['uid'],
            name=data.get('name') or '',
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            updated_at=parse_timestamp(data.get('updated_at')),
            stale=bool(data.get('stale', False)),
        )

    def moved_to(self, latitude, longitude, updated_at) -> 'FriendLocation':
        return replace(
            self,
            latitude=float(latitude),
            longitude=float(longitude),
            updated_at=parse_timestamp(updated_at),
            stale=False,
        )


@dataclass
class PositionSample:
    """One reading from the device position stream."""

    latitude: float
    longitude: float
    accuracy: float
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_json(cls, data: dict) -> 'PositionSample':
        ts = data.get('timestamp')
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            accuracy=float(data.get('accuracy', 0.0)),
            timestamp=parse_timestamp(ts) if ts else utcnow(),
        )


@dataclass
class ChangeEvent:
    """A row-level change delivered by the change feed."""

    table: str
    event_type: str
    new: Optional[dict] = None
    old: Optional[dict] = None

    @classmethod
    def from_json(cls, data: dict) -> 'ChangeEvent':
        return cls(
            table=data['table'],
            event_type=data['eventType'],
            new=data.get('new'),
            old=data.get('old'),
        )

    def to_json(self) -> dict:
        return {'table': self.table, 'eventType': self.event_type, 'new': self.new, 'old': self.old}

    @property
    def row(self) -> dict:
        """The row the event is about: new for inserts/updates, old for deletes."""
        return (self.old if self.event_type == EVENT_DELETE else self.new) or {}
