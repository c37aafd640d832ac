"""
Pytest fixtures for unit tests: an in-memory stand-in for FriendtrackClient.
"""

import pytest

from friendtrack.models import ChangeEvent, Connection, Connections, ShareLink, User


class FakeSubscription:
    def __init__(self, callback):
        self.callback = callback
        self.closed = False

    def push(self, table, event_type, new=None, old=None):
        self.callback(ChangeEvent(table=table, event_type=event_type, new=new, old=old))

    def wait(self):
        pass

    def close(self):
        self.closed = True


class FakeClient:
    """Records calls and serves canned connection and location snapshots."""

    def __init__(self, user=None):
        self.user = user or User(id='uid_me', name='Me', email='me@test.com')
        self.token = None
        self.published = []
        self.deletes = 0
        self.publish_error = None
        self.delete_error = None
        self.friends = []
        self.friend_locations = []
        self.subscriptions = []
        self._auth_listeners = []

    # Auth

    def sign_in(self, id_token):
        self.token = f'session-for-{id_token}'
        for listener in list(self._auth_listeners):
            listener(self.user)
        return self.user

    def sign_out(self):
        was_signed_in = self.token is not None
        self.token = None
        if was_signed_in:
            for listener in list(self._auth_listeners):
                listener(None)

    def on_auth_change(self, callback):
        self._auth_listeners.append(callback)
        return lambda: self._auth_listeners.remove(callback)

    def me(self):
        return self.user

    # Location

    def publish_location(self, latitude, longitude):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((latitude, longitude))

    def delete_location(self):
        if self.delete_error is not None:
            raise self.delete_error
        self.deletes += 1
        return True

    # Shares

    def list_connections(self):
        mutual = [
            Connection(
                share=ShareLink(id=i, owner_id=friend.id, viewer_id=self.user.id, status='approved'),
                user=friend,
            )
            for i, friend in enumerate(self.friends, start=1)
        ]
        return Connections(mutual=mutual)

    def resolve_friend_locations(self):
        return list(self.friend_locations)

    def subscribe(self, callback):
        subscription = FakeSubscription(callback)
        self.subscriptions.append(subscription)
        return subscription

    @property
    def feed(self):
        return self.subscriptions[-1]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def bob():
    return User(id='uid_bob', name='Bob', email='bob@test.com')


@pytest.fixture
def carol():
    return User(id='uid_carol', name='Carol', email='carol@test.com')
