"""
Location publisher tests.
"""

import pytest

from friendtrack.errors import BackendError, PermissionDenied, Timeout, Unavailable
from friendtrack.models import PositionSample
from friendtrack.publisher import DEFAULT_ACCURACY_THRESHOLD_M, LocationPublisher


def sample(lat=40.0, lng=-74.0, accuracy=10.0):
    return PositionSample(latitude=lat, longitude=lng, accuracy=accuracy)


class TestSamples:

    def test_default_threshold(self, fake_client):
        assert LocationPublisher(fake_client).accuracy_threshold == DEFAULT_ACCURACY_THRESHOLD_M == 100

    def test_accurate_sample_published(self, fake_client):
        publisher = LocationPublisher(fake_client)

        assert publisher.on_sample(sample(1.0, 2.0)) is True
        assert fake_client.published == [(1.0, 2.0)]

    def test_inaccurate_sample_shown_not_published(self, fake_client):
        publisher = LocationPublisher(fake_client, accuracy_threshold=50)

        assert publisher.on_sample(sample(1.0, 2.0, accuracy=80)) is False
        assert fake_client.published == []
        assert publisher.position.latitude == 1.0
        assert publisher.trail == [(1.0, 2.0)]
        assert publisher.last_accepted is None

    def test_threshold_is_inclusive(self, fake_client):
        publisher = LocationPublisher(fake_client, accuracy_threshold=50)

        assert publisher.on_sample(sample(accuracy=50)) is True

    def test_trail_grows(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.on_sample(sample(1.0, 1.0))
        publisher.on_sample(sample(2.0, 2.0, accuracy=500))

        assert publisher.trail == [(1.0, 1.0), (2.0, 2.0)]

    def test_publish_failure_dropped(self, fake_client):
        """A failed write is logged and the next sample tries again."""
        publisher = LocationPublisher(fake_client)
        fake_client.publish_error = BackendError('down')

        assert publisher.on_sample(sample(1.0, 1.0)) is False

        fake_client.publish_error = None
        assert publisher.on_sample(sample(2.0, 2.0)) is True
        assert fake_client.published == [(2.0, 2.0)]


class TestGhostMode:

    def test_private_publishes_nothing(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.set_private(True)

        assert publisher.on_sample(sample()) is False
        assert fake_client.published == []

    def test_entering_private_deletes_location(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.set_private(True)

        assert fake_client.deletes == 1

    def test_same_state_is_noop(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.set_private(False)
        publisher.set_private(True)
        publisher.set_private(True)

        assert fake_client.deletes == 1
        assert fake_client.published == []

    def test_leaving_private_republishes_last_accepted(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.set_private(True)
        publisher.on_sample(sample(1.0, 1.0))
        publisher.on_sample(sample(5.0, 5.0, accuracy=900))

        publisher.set_private(False)

        assert fake_client.published == [(1.0, 1.0)]

    def test_leaving_private_without_sample(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.set_private(True)
        publisher.set_private(False)

        assert fake_client.published == []

    def test_delete_failure_raises_but_stays_private(self, fake_client):
        publisher = LocationPublisher(fake_client)
        fake_client.delete_error = BackendError('down')

        with pytest.raises(BackendError):
            publisher.set_private(True)

        assert publisher.private is True
        assert publisher.on_sample(sample()) is False


class TestStreamErrors:

    def test_timeout_is_warning(self, fake_client):
        publisher = LocationPublisher(fake_client)

        assert publisher.on_error(Timeout()) is True
        assert isinstance(publisher.warning, Timeout)
        assert publisher.error is None

    def test_warning_cleared_by_next_sample(self, fake_client):
        publisher = LocationPublisher(fake_client)
        publisher.on_error(Timeout())
        publisher.on_sample(sample())

        assert publisher.warning is None

    def test_permission_denied_is_error(self, fake_client):
        publisher = LocationPublisher(fake_client)

        assert publisher.on_error(PermissionDenied()) is True
        assert isinstance(publisher.error, PermissionDenied)

    def test_unavailable_stops(self, fake_client):
        publisher = LocationPublisher(fake_client)

        assert publisher.on_error(Unavailable()) is False


class TestConsume:

    def test_consumes_stream(self, fake_client):
        publisher = LocationPublisher(fake_client, accuracy_threshold=50)
        stream = [sample(1.0, 1.0), Timeout(), sample(2.0, 2.0, accuracy=99), sample(3.0, 3.0)]

        assert publisher.consume(stream) == 2
        assert fake_client.published == [(1.0, 1.0), (3.0, 3.0)]
        assert publisher.warning is None
        assert publisher.watching is False

    def test_unavailable_ends_watch(self, fake_client):
        publisher = LocationPublisher(fake_client)
        stream = [sample(1.0, 1.0), Unavailable(), sample(2.0, 2.0)]

        assert publisher.consume(stream) == 1
        assert isinstance(publisher.error, Unavailable)

    def test_stop_ends_watch(self, fake_client):
        publisher = LocationPublisher(fake_client)

        def stream():
            yield sample(1.0, 1.0)
            publisher.stop()
            yield sample(2.0, 2.0)

        assert publisher.consume(stream()) == 1
        assert fake_client.published == [(1.0, 1.0)]
