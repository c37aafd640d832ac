"""
Live view of mutual friends' locations.

The view is seeded from a snapshot (friends plus their resolved locations)
and then kept current by folding change-feed events into it. Folding is a
pure function over an immutable state so it can be tested on its own.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict

from .errors import BackendError
from .models import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    TABLE_LIVE_LOCATIONS,
    TABLE_LOCATION_SHARES,
    ChangeEvent,
    FriendLocation,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiveViewState:
    friends: Dict[str, User] = field(default_factory=dict)
    locations: Dict[str, FriendLocation] = field(default_factory=dict)


def seed_state(connections, friend_locations) -> LiveViewState:
    """Build the initial state from a connection listing and a location snapshot."""
    friends = connections.friends()
    locations = {loc.uid: loc for loc in friend_locations if loc.uid in friends}
    return LiveViewState(friends=friends, locations=locations)


def apply_event(state: LiveViewState, event: ChangeEvent) -> LiveViewState:
    """Fold one change event into the state.

    Location upserts are merged only for known friends; a friend without an
    entry (back from ghost mode, or first publish) gets a fresh one. Deletes
    drop the entry. Anything else leaves the state as it was.
    """
    if event.table != TABLE_LIVE_LOCATIONS:
        return state

    row = event.row
    uid = row.get('firebase_uid')
    if not uid:
        return state

    if event.event_type == EVENT_DELETE:
        if uid not in state.locations:
            return state
        locations = {k: v for k, v in state.locations.items() if k != uid}
        return replace(state, locations=locations)

    if event.event_type not in (EVENT_INSERT, EVENT_UPDATE):
        return state

    friend = state.friends.get(uid)
    if friend is None:
        return state

    current = state.locations.get(uid) or FriendLocation(
        uid=uid, name=friend.name, latitude=0.0, longitude=0.0
    )
    try:
        moved = current.moved_to(row['latitude'], row['longitude'], row.get('updated_at'))
    except (KeyError, TypeError, ValueError):
        logger.warning('Ignoring malformed location row for %s', uid)
        return state

    return replace(state, locations={**state.locations, uid: moved})


class LiveView:
    """Friends' locations for the signed-in user, kept live.

    on_update, if given, is called with the new state after every change.
    """

    def __init__(self, client, on_update=None):
        self.client = client
        self.on_update = on_update
        self.state = LiveViewState()
        self._subscription = None

    @property
    def friend_locations(self):
        return sorted(self.state.locations.values(), key=lambda loc: (loc.name.lower(), loc.uid))

    def refresh(self):
        """Re-seed from the backend."""
        self.state = seed_state(
            self.client.list_connections(), self.client.resolve_friend_locations()
        )
        self._notify()
        return self.state

    def start(self):
        if self._subscription is not None:
            return self
        self.refresh()
        self._subscription = self.client.subscribe(self.handle_event)
        return self

    def handle_event(self, event):
        if isinstance(event, dict):
            event = ChangeEvent.from_json(event)

        # Friend set changed: a cheap full re-seed beats patching it
        if event.table == TABLE_LOCATION_SHARES:
            try:
                self.refresh()
            except BackendError as e:
                logger.warning('Could not refresh after share change: %s', e)
            return

        new_state = apply_event(self.state, event)
        if new_state is not self.state:
            self.state = new_state
            self._notify()

    def _notify(self):
        if self.on_update is not None:
            self.on_update(self.state)

    def wait(self):
        """Block while the change feed subscription is open."""
        if self._subscription is not None:
            self._subscription.wait()

    def close(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc_info):
        self.close()
