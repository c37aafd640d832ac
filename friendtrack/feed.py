"""
Server side of the realtime change feed.

Every write to live_locations or location_shares is pushed as a 'change'
event to the rooms of the users allowed to see the row. Each authenticated
socket sits in the room of its own user.
"""

import logging

from flask_socketio import SocketIO

from .models import CHANGE_EVENT, ChangeEvent

logger = logging.getLogger(__name__)

socketio = SocketIO()


def user_room(uid):
    """Room that receives every change visible to the given user."""
    return f'user:{uid}'


def publish_change(table, event_type, new=None, old=None, recipients=()):
    """Emit one row change to each recipient's room."""
    event = ChangeEvent(table=table, event_type=event_type, new=new, old=old)
    payload = event.to_json()

    delivered = sorted(set(recipients))
    for uid in delivered:
        socketio.emit(CHANGE_EVENT, payload, to=user_room(uid))

    logger.debug('Change %s %s delivered to %d user(s)', table, event_type, len(delivered))
    return event
