"""
Signed-in session: ties the publisher and the live view to one sign-in.

Everything started by a session is torn down when the user signs out,
whether through close() or through the client directly.
"""

import logging

from .live_view import LiveView
from .publisher import DEFAULT_ACCURACY_THRESHOLD_M, LocationPublisher

logger = logging.getLogger(__name__)


class Session:
    """One signed-in session.

    Used as a context manager, the session is not started on entry: call
    start() inside the block, since it needs the identity token. Exiting
    signs out only if the session got as far as signing in.
    """

    def __init__(self, client, accuracy_threshold=DEFAULT_ACCURACY_THRESHOLD_M, on_update=None):
        self.client = client
        self.accuracy_threshold = accuracy_threshold
        self.on_update = on_update

        self.user = None
        self.publisher = None
        self.live_view = None
        self._unsubscribe_auth = None

    @property
    def active(self):
        return self._unsubscribe_auth is not None

    def start(self, id_token=None):
        """Sign in (or reuse the client's token) and start the live view."""
        if self.active:
            return self

        if id_token is not None:
            self.user = self.client.sign_in(id_token)
        else:
            self.user = self.client.me()

        try:
            self.publisher = LocationPublisher(self.client, self.accuracy_threshold)
            self.live_view = LiveView(self.client, on_update=self.on_update)
            self.live_view.start()
        except Exception:
            self._teardown()
            raise

        self._unsubscribe_auth = self.client.on_auth_change(self._on_auth_change)
        logger.info('Session started for %s', self.user.email)
        return self

    def track(self, stream) -> int:
        """Feed a position stream through the publisher until it ends or is stopped."""
        if not self.active:
            raise RuntimeError('Session is not active')
        return self.publisher.consume(stream)

    def set_private(self, private):
        self.publisher.set_private(private)

    def _on_auth_change(self, user):
        if user is None:
            self._teardown()

    def _teardown(self):
        unsubscribe, self._unsubscribe_auth = self._unsubscribe_auth, None
        if unsubscribe is not None:
            unsubscribe()
        if self.publisher is not None:
            self.publisher.stop()
        if self.live_view is not None:
            self.live_view.close()

    def close(self):
        """Stop everything and sign out. Safe to call more than once."""
        was_active = self.active
        self._teardown()
        if self.user is not None:
            self.user = None
            self.client.sign_out()
        if was_active:
            logger.info('Session closed')

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
