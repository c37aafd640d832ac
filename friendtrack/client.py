"""
Client for the Friendtrack API.

Wraps the HTTP routes in typed methods and the change feed in a
subscription object. Failed calls raise the matching error from
friendtrack.errors; nothing is retried.
"""

import logging

import requests
import socketio

from .errors import BackendError, error_for_code
from .models import (
    CHANGE_EVENT,
    ChangeEvent,
    Connections,
    FriendLocation,
    LiveLocation,
    ShareLink,
    User,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER = 'http://localhost:8600'


class ChangeFeedSubscription:
    """A live subscription to the change feed.

    Reconnection is left to the Socket.IO client.
    """

    def __init__(self, base_url, token, callback, sio=None):
        self.base_url = base_url
        self.token = token
        self.callback = callback
        self._sio = sio or socketio.Client()
        self._sio.on(CHANGE_EVENT, self._on_change)

    def _on_change(self, data):
        try:
            event = ChangeEvent.from_json(data)
        except (KeyError, TypeError):
            logger.warning('Ignoring malformed change event: %r', data)
            return
        self.callback(event)

    @property
    def connected(self):
        return self._sio.connected

    def start(self):
        try:
            self._sio.connect(self.base_url, auth={'token': self.token})
        except socketio.exceptions.ConnectionError as e:
            raise BackendError(f'Could not subscribe to change feed: {e}') from e
        return self

    def wait(self):
        """Block until the subscription is closed."""
        self._sio.wait()

    def close(self):
        if self._sio.connected:
            self._sio.disconnect()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FriendtrackClient:
    """HTTP client for the Friendtrack API."""

    def __init__(self, base_url: str = DEFAULT_SERVER, token: str = None, timeout=None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.user = None
        self._auth_listeners = []

    def _request(self, method: str, endpoint: str, data=None, auth=True):
        """Make an API request and return the decoded JSON body."""
        url = f'{self.base_url}{endpoint}'
        headers = {'Content-Type': 'application/json'}

        if auth and self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        try:
            response = requests.request(
                method, url, json=data, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise BackendError(f'Could not connect to server at {self.base_url}: {e}') from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.ok:
            if not isinstance(body, dict):
                body = {}
            message = body.get('error') or f'HTTP {response.status_code}'
            raise error_for_code(body.get('code'), message)

        return body

    # ===================
    # Health
    # ===================

    def health(self) -> dict:
        return self._request('GET', '/api/health', auth=False)

    # ===================
    # Authentication
    # ===================

    def sign_in(self, id_token: str) -> User:
        """Exchange an identity provider token for a session."""
        data = self._request('POST', '/api/auth/firebase', {'id_token': id_token}, auth=False)
        self.token = data['token']
        self.user = User.from_json(data['user'])
        self._notify_auth_change(self.user)
        return self.user

    def sign_out(self):
        """Drop the session token."""
        was_signed_in = self.token is not None
        self.token = None
        self.user = None
        if was_signed_in:
            self._notify_auth_change(None)

    def on_auth_change(self, callback):
        """Register a listener called with the User on sign-in and None on sign-out.

        Returns a callable that removes the listener.
        """
        self._auth_listeners.append(callback)

        def unsubscribe():
            if callback in self._auth_listeners:
                self._auth_listeners.remove(callback)

        return unsubscribe

    def _notify_auth_change(self, user):
        for listener in list(self._auth_listeners):
            listener(user)

    def me(self) -> User:
        self.user = User.from_json(self._request('GET', '/api/me'))
        return self.user

    # ===================
    # Location
    # ===================

    def publish_location(self, latitude: float, longitude: float) -> LiveLocation:
        data = self._request('PUT', '/api/location', {'latitude': latitude, 'longitude': longitude})
        return LiveLocation.from_json(data['location'])

    def get_location(self):
        data = self._request('GET', '/api/location')
        return LiveLocation.from_json(data['location']) if data.get('location') else None

    def delete_location(self) -> bool:
        """Remove own location (ghost mode). Returns True if a row was deleted."""
        return bool(self._request('DELETE', '/api/location').get('deleted'))

    # ===================
    # Shares
    # ===================

    def send_request(self, email: str) -> ShareLink:
        data = self._request('POST', '/api/shares', {'email': email})
        return ShareLink.from_json(data['share'])

    def approve(self, share_id: int) -> ShareLink:
        data = self._request('POST', f'/api/shares/{share_id}/approve')
        return ShareLink.from_json(data['share'])

    def delete_share(self, share_id: int) -> str:
        """Delete a link; returns 'rejected', 'cancelled' or 'disconnected'."""
        return self._request('DELETE', f'/api/shares/{share_id}')['action']

    reject = delete_share
    cancel = delete_share
    disconnect = delete_share

    def list_connections(self) -> Connections:
        return Connections.from_json(self._request('GET', '/api/shares'))

    def resolve_friend_locations(self) -> list:
        data = self._request('GET', '/api/friends/locations')
        return [FriendLocation.from_json(f) for f in data.get('friends', [])]

    # ===================
    # Change Feed
    # ===================

    def subscribe(self, callback) -> ChangeFeedSubscription:
        """Subscribe to row changes visible to the signed-in user."""
        return ChangeFeedSubscription(self.base_url, self.token, callback).start()
