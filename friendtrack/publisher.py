"""
Location Publisher.

Turns the device position stream into writes of the user's single live
location row. Inaccurate samples are shown locally but never published,
and nothing is written while the user is in ghost mode.
"""

import logging

from .errors import BackendError, PositionError, Timeout

logger = logging.getLogger(__name__)

DEFAULT_ACCURACY_THRESHOLD_M = 100.0


class LocationPublisher:
    def __init__(self, client, accuracy_threshold=DEFAULT_ACCURACY_THRESHOLD_M, private=False):
        self.client = client
        self.accuracy_threshold = float(accuracy_threshold)
        self.private = private

        # Local display state
        self.position = None
        self.trail = []
        self.last_accepted = None

        # User-visible stream state
        self.error = None
        self.warning = None

        self.watching = False

    def on_sample(self, sample) -> bool:
        """Handle one position sample. Returns True if it was published."""
        self.position = sample
        self.trail.append((sample.latitude, sample.longitude))
        self.warning = None
        self.error = None

        if sample.accuracy > self.accuracy_threshold:
            logger.debug(
                'Sample not published: accuracy %.0f m exceeds %.0f m',
                sample.accuracy,
                self.accuracy_threshold,
            )
            return False

        self.last_accepted = sample
        if self.private:
            return False

        return self._publish(sample)

    def _publish(self, sample) -> bool:
        try:
            self.client.publish_location(sample.latitude, sample.longitude)
        except BackendError as e:
            # Dropped; the next sample tries again
            logger.warning('Location publish failed: %s', e)
            return False
        return True

    def on_error(self, error: PositionError) -> bool:
        """Record a position stream error. Returns False if the watch must stop."""
        if isinstance(error, Timeout):
            self.warning = error
            logger.info('Position timeout: %s', error)
        else:
            self.error = error
            logger.warning('Position error: %s', error)
        return error.recoverable

    def set_private(self, private):
        """Enter or leave ghost mode.

        Entering deletes the live location row. Leaving republishes the last
        accepted sample straight away.
        """
        private = bool(private)
        if private == self.private:
            return

        self.private = private
        if private:
            self.client.delete_location()
            logger.info('Ghost mode on')
        else:
            logger.info('Ghost mode off')
            if self.last_accepted is not None:
                self._publish(self.last_accepted)

    def consume(self, stream) -> int:
        """Drive the publisher from an iterable of samples and PositionErrors.

        Stops at the end of the stream, on an unrecoverable error or when
        stop() is called. Returns the number of published samples.
        """
        self.watching = True
        published = 0
        try:
            for item in stream:
                if not self.watching:
                    break
                if isinstance(item, PositionError):
                    if not self.on_error(item):
                        break
                elif self.on_sample(item):
                    published += 1
        finally:
            self.watching = False
        return published

    def stop(self):
        self.watching = False
