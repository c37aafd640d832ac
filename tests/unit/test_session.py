"""
Session lifecycle tests.
"""

import pytest

from friendtrack.errors import BackendError
from friendtrack.models import PositionSample
from friendtrack.session import Session


class TestSessionLifecycle:

    def test_start_signs_in_and_starts_view(self, fake_client):
        session = Session(fake_client).start('id-token')

        assert session.active
        assert session.user == fake_client.user
        assert fake_client.token == 'session-for-id-token'
        assert len(fake_client.subscriptions) == 1
        assert session.publisher.accuracy_threshold == 100

    def test_start_without_token_reuses_session(self, fake_client):
        fake_client.token = 'existing'

        session = Session(fake_client).start()

        assert session.user == fake_client.user
        assert fake_client.token == 'existing'

    def test_custom_threshold(self, fake_client):
        session = Session(fake_client, accuracy_threshold=25).start('t')

        assert session.publisher.accuracy_threshold == 25

    def test_close_tears_down_and_signs_out(self, fake_client):
        session = Session(fake_client).start('t')
        subscription = fake_client.feed

        session.close()

        assert not session.active
        assert subscription.closed
        assert fake_client.token is None
        assert fake_client._auth_listeners == []

    def test_close_is_idempotent(self, fake_client):
        session = Session(fake_client).start('t')

        session.close()
        session.close()

        assert not session.active

    def test_sign_out_elsewhere_tears_down(self, fake_client):
        session = Session(fake_client).start('t')
        subscription = fake_client.feed

        fake_client.sign_out()

        assert not session.active
        assert subscription.closed

    def test_context_manager(self, fake_client):
        with Session(fake_client) as session:
            session.start('t')
            subscription = fake_client.feed

        assert subscription.closed
        assert fake_client.token is None

    def test_unstarted_context_does_not_sign_out(self, fake_client):
        """Exiting a session that was never started leaves the client signed in."""
        fake_client.token = 'existing'

        with Session(fake_client) as session:
            assert not session.active

        assert fake_client.token == 'existing'

    def test_failed_start_leaves_nothing_running(self, fake_client):
        def fail():
            raise BackendError('down')

        fake_client.list_connections = fail

        with pytest.raises(BackendError):
            Session(fake_client).start('t')

        assert fake_client._auth_listeners == []
        assert fake_client.subscriptions == []


class TestSessionTracking:

    def test_track_publishes(self, fake_client):
        session = Session(fake_client).start('t')

        published = session.track([PositionSample(1.0, 2.0, 5.0)])

        assert published == 1
        assert fake_client.published == [(1.0, 2.0)]

    def test_sign_out_stops_tracking(self, fake_client):
        session = Session(fake_client).start('t')

        def stream():
            yield PositionSample(1.0, 1.0, 5.0)
            fake_client.sign_out()
            yield PositionSample(2.0, 2.0, 5.0)

        assert session.track(stream()) == 1

    def test_track_requires_active_session(self, fake_client):
        session = Session(fake_client)

        with pytest.raises(RuntimeError):
            session.track([])

    def test_ghost_mode(self, fake_client):
        session = Session(fake_client).start('t')

        session.set_private(True)
        session.track([PositionSample(1.0, 1.0, 5.0)])

        assert fake_client.deletes == 1
        assert fake_client.published == []
