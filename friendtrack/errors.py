"""
Error taxonomy shared by the server, the client library and the CLI.

Backend errors carry an HTTP status and a machine-readable code. The server
renders them as {'error': message, 'code': code}; the client maps the code
back to the same class.

Position errors come from the device position stream and use the browser
geolocation error codes.
"""


class FriendtrackError(Exception):
    """Base class for all Friendtrack errors."""

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    default_message = 'Friendtrack error'


# ===================
# Backend Errors
# ===================


class BackendError(FriendtrackError):
    """A read or write against the backend failed."""

    status_code = 500
    code = 'backend_error'
    default_message = 'Backend request failed'

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class InvalidRequest(BackendError):
    status_code = 400
    code = 'invalid_request'
    default_message = 'Invalid request'


class Unauthorized(BackendError):
    status_code = 401
    code = 'unauthorized'
    default_message = 'Unauthorized'


class NotFound(BackendError):
    status_code = 404
    code = 'not_found'
    default_message = 'Not found'


class SelfRequest(BackendError):
    status_code = 400
    code = 'self_request'
    default_message = 'You cannot request yourself'


class AlreadyExists(BackendError):
    status_code = 409
    code = 'already_exists'
    default_message = 'A connection already exists with this user'


BACKEND_ERRORS = {
    cls.code: cls
    for cls in (BackendError, InvalidRequest, Unauthorized, NotFound, SelfRequest, AlreadyExists)
}


def error_for_code(code, message=None):
    """Build the backend error matching a response code (BackendError if unknown)."""
    return BACKEND_ERRORS.get(code, BackendError)(message)


# ===================
# Position Stream Errors
# ===================


class PositionError(FriendtrackError):
    """Error signalled by the position stream."""

    geolocation_code = 0
    recoverable = True
    default_message = 'Position error'


class PermissionDenied(PositionError):
    geolocation_code = 1
    default_message = 'Location permission denied'


class Unavailable(PositionError):
    geolocation_code = 2
    recoverable = False
    default_message = 'Location unavailable'


class Timeout(PositionError):
    geolocation_code = 3
    default_message = 'Location request timed out'


POSITION_ERRORS = {cls.geolocation_code: cls for cls in (PermissionDenied, Unavailable, Timeout)}


def position_error_for_code(code, message=None):
    """Build the position error for a geolocation error code."""
    try:
        return POSITION_ERRORS[int(code)](message)
    except (KeyError, TypeError, ValueError):
        return PositionError(message or f'Unknown position error: {code}')
