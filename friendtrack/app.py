"""
Friendtrack Backend Server

A Flask + Socket.IO server for live friend location sharing.
Uses SQLite for storage.

Key principles:
- Identity comes from Firebase ID tokens; the server issues its own session tokens
- A location is only visible to mutual friends (an approved share link)
- Every row change is pushed to the affected users over the change feed
"""

import hashlib
import logging
import os
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import Flask, g, jsonify, request
from flask_socketio import join_room
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from werkzeug.middleware.proxy_fix import ProxyFix

from .errors import (
    AlreadyExists,
    BackendError,
    InvalidRequest,
    NotFound,
    SelfRequest,
    Unauthorized,
)
from .feed import publish_change, socketio, user_room
from .logconfig import configure_logging
from .models import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    STATUS_APPROVED,
    STATUS_PENDING,
    TABLE_LIVE_LOCATIONS,
    TABLE_LOCATION_SHARES,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

# ===================
# Utilities
# ===================


def now_iso():
    """Current UTC time as an ISO-8601 string (the stored timestamp format)."""
    return utcnow().isoformat()


def env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


# ===================
# Configuration
# ===================

app = Flask(__name__)
app.config['DATABASE'] = os.environ.get('DATABASE_PATH', 'friendtrack.db')
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')

# Firebase project whose ID tokens we accept
app.config['FIREBASE_PROJECT_ID'] = os.environ.get('FIREBASE_PROJECT_ID', '')

# Testing mode - allows test tokens to bypass Firebase verification
# NEVER set this in production!
app.config['TESTING_MODE'] = env_flag('TESTING_MODE')

# How long before a location is considered stale
app.config['LOCATION_EXPIRY_MINUTES'] = int(os.environ.get('LOCATION_EXPIRY_MINUTES', 30))

# Session token expiry
app.config['TOKEN_EXPIRY_DAYS'] = int(os.environ.get('TOKEN_EXPIRY_DAYS', 30))

# Reverse proxy support
# Set BEHIND_PROXY=true when running behind nginx, traefik, etc.
if env_flag('BEHIND_PROXY'):
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

socketio.init_app(app, cors_allowed_origins='*')

# Name used when the identity provider has no display name
ANONYMOUS_NAME = 'Anonymous'


# ===================
# Token Management
# ===================


def _sign(token_data):
    return hashlib.sha256((token_data + app.config['SECRET_KEY']).encode()).hexdigest()[:16]


def generate_token(user_id):
    """Generate a session token for a signed-in user."""
    # Format: user_id:random_hex:timestamp_hex:signature
    random_part = secrets.token_hex(16)
    timestamp = int(utcnow().timestamp())
    token_data = f'{user_id}:{random_part}:{timestamp:x}'
    return f'{token_data}:{_sign(token_data)}'


def verify_token(token):
    """Verify token and return user_id if valid."""
    try:
        user_id, random_part, timestamp_hex, signature = token.rsplit(':', 3)
    except (AttributeError, ValueError):
        return None

    token_data = f'{user_id}:{random_part}:{timestamp_hex}'
    if not secrets.compare_digest(signature.encode(), _sign(token_data).encode()):
        return None

    try:
        token_time = datetime.fromtimestamp(int(timestamp_hex, 16), timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    if utcnow() - token_time > timedelta(days=app.config['TOKEN_EXPIRY_DAYS']):
        return None

    return user_id


# ===================
# Database Setup
# ===================


def get_db():
    """Get database connection for current request."""
    if 'db' not in g:
        g.db = sqlite3.connect(app.config['DATABASE'])
        g.db.row_factory = sqlite3.Row
        g.db.execute('PRAGMA foreign_keys = ON')
    return g.db


def close_db(e=None):
    """Close database connection."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def init_db():
    """Initialize database schema."""
    db = get_db()
    db.executescript("""
        CREATE TABLE IF NOT EXISTS users (
            firebase_uid TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_users_email
        ON users(lower(email));

        CREATE TABLE IF NOT EXISTS live_locations (
            firebase_uid TEXT PRIMARY KEY,
            latitude REAL NOT NULL,
            longitude REAL NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (firebase_uid) REFERENCES users(firebase_uid)
        );

        CREATE TABLE IF NOT EXISTS location_shares (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_uid TEXT NOT NULL,
            viewer_uid TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'approved')),
            created_at TEXT NOT NULL,
            approved_at TEXT,
            FOREIGN KEY (owner_uid) REFERENCES users(firebase_uid),
            FOREIGN KEY (viewer_uid) REFERENCES users(firebase_uid),
            CHECK (owner_uid <> viewer_uid)
        );

        -- One link per unordered pair, whichever side asked first
        CREATE UNIQUE INDEX IF NOT EXISTS idx_location_shares_pair
        ON location_shares(min(owner_uid, viewer_uid), max(owner_uid, viewer_uid));

        CREATE INDEX IF NOT EXISTS idx_location_shares_owner
        ON location_shares(owner_uid);

        CREATE INDEX IF NOT EXISTS idx_location_shares_viewer
        ON location_shares(viewer_uid);
    """)
    db.commit()


@app.before_request
def before_request():
    """Ensure database is initialized."""
    init_db()


app.teardown_appcontext(close_db)


# ===================
# Row Serialization
# ===================


def user_to_json(row):
    return {'id': row['firebase_uid'], 'name': row['name'], 'email': row['email']}


def location_to_json(row):
    return {
        'firebase_uid': row['firebase_uid'],
        'latitude': row['latitude'],
        'longitude': row['longitude'],
        'updated_at': row['updated_at'],
    }


def share_to_json(row):
    return {
        'id': row['id'],
        'owner_uid': row['owner_uid'],
        'viewer_uid': row['viewer_uid'],
        'status': row['status'],
        'created_at': row['created_at'],
        'approved_at': row['approved_at'],
    }


def is_stale(updated_at):
    """True if a location is older than the configured expiry."""
    if not updated_at:
        return False
    expiry = timedelta(minutes=app.config['LOCATION_EXPIRY_MINUTES'])
    return parse_timestamp(updated_at) < utcnow() - expiry


# ===================
# User Helpers
# ===================


def get_user_by_uid(uid):
    """Get user by identity uid from database."""
    db = get_db()
    row = db.execute('SELECT * FROM users WHERE firebase_uid = ?', (uid,)).fetchone()
    return user_to_json(row) if row else None


def get_user_by_email(email):
    """Get user by email (case-insensitive exact match)."""
    db = get_db()
    row = db.execute(
        'SELECT * FROM users WHERE lower(email) = ?', (email.strip().lower(),)
    ).fetchone()
    return user_to_json(row) if row else None


def upsert_user(uid, name, email):
    """Create or refresh the user row for a signed-in identity.

    Returns (user, is_new).
    """
    db = get_db()
    is_new = get_user_by_uid(uid) is None
    db.execute(
        """
        INSERT INTO users (firebase_uid, name, email, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(firebase_uid) DO UPDATE SET
            name = excluded.name,
            email = excluded.email
    """,
        (uid, name or ANONYMOUS_NAME, (email or '').strip().lower(), now_iso()),
    )
    db.commit()
    return get_user_by_uid(uid), is_new


def get_mutual_friend_ids(uid):
    """Get the uids this user shares an approved link with, in either direction."""
    db = get_db()
    rows = db.execute(
        """
        SELECT
            CASE WHEN owner_uid = ? THEN viewer_uid ELSE owner_uid END AS friend_uid
        FROM location_shares
        WHERE (owner_uid = ? OR viewer_uid = ?) AND status = ?
    """,
        (uid, uid, uid, STATUS_APPROVED),
    ).fetchall()
    return [row['friend_uid'] for row in rows]


# ===================
# Live Location Helpers
# ===================


def get_live_location(uid):
    db = get_db()
    return db.execute('SELECT * FROM live_locations WHERE firebase_uid = ?', (uid,)).fetchone()


def notify_location_change(uid, event_type, new=None, old=None):
    """Push a live_locations change to the owner and their mutual friends."""
    recipients = [uid] + get_mutual_friend_ids(uid)
    publish_change(TABLE_LIVE_LOCATIONS, event_type, new=new, old=old, recipients=recipients)


def parse_coordinates(data):
    """Validate latitude/longitude from a request body."""
    try:
        latitude = float(data['latitude'])
        longitude = float(data['longitude'])
    except (KeyError, TypeError, ValueError):
        raise InvalidRequest('latitude and longitude are required numbers')

    if not -90 <= latitude <= 90:
        raise InvalidRequest('latitude must be between -90 and 90')
    if not -180 <= longitude <= 180:
        raise InvalidRequest('longitude must be between -180 and 180')
    return latitude, longitude


def upsert_live_location(uid, latitude, longitude):
    """Write the user's current position, overwriting any previous one.

    Last write wins: updated_at is the server clock at write time.
    """
    db = get_db()
    old = get_live_location(uid)
    db.execute(
        """
        INSERT INTO live_locations (firebase_uid, latitude, longitude, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(firebase_uid) DO UPDATE SET
            latitude = excluded.latitude,
            longitude = excluded.longitude,
            updated_at = excluded.updated_at
    """,
        (uid, latitude, longitude, now_iso()),
    )
    db.commit()

    new = location_to_json(get_live_location(uid))
    if old is None:
        notify_location_change(uid, EVENT_INSERT, new=new)
    else:
        notify_location_change(uid, EVENT_UPDATE, new=new, old=location_to_json(old))
    return new


def delete_live_location(uid):
    """Remove the user's position (ghost mode). Returns the deleted row or None."""
    db = get_db()
    old = get_live_location(uid)
    if old is None:
        return None

    db.execute('DELETE FROM live_locations WHERE firebase_uid = ?', (uid,))
    db.commit()

    old = location_to_json(old)
    notify_location_change(uid, EVENT_DELETE, old=old)
    logger.info('User %s went ghost; location removed', uid)
    return old


# ===================
# Share Link Helpers
# ===================


def get_share(share_id):
    db = get_db()
    return db.execute('SELECT * FROM location_shares WHERE id = ?', (share_id,)).fetchone()


def find_share_between(uid_a, uid_b):
    """Find a link between two users in either direction."""
    db = get_db()
    return db.execute(
        """
        SELECT * FROM location_shares
        WHERE (owner_uid = ? AND viewer_uid = ?)
           OR (owner_uid = ? AND viewer_uid = ?)
    """,
        (uid_a, uid_b, uid_b, uid_a),
    ).fetchone()


def notify_share_change(event_type, new=None, old=None):
    """Push a location_shares change to both parties of the link."""
    row = new or old
    publish_change(
        TABLE_LOCATION_SHARES,
        event_type,
        new=new,
        old=old,
        recipients=[row['owner_uid'], row['viewer_uid']],
    )


def send_share_request(viewer, email):
    """Ask to see the location of the user with the given email.

    The new link is pending, owned by the target and viewed by the caller.
    """
    if email is not None and not isinstance(email, str):
        raise InvalidRequest('Email must be a string')
    email = (email or '').strip().lower()
    if not email:
        raise InvalidRequest('Email is required')

    target = get_user_by_email(email)
    if not target:
        raise NotFound('User not found. Ensure they have signed in before.')

    if target['id'] == viewer['id']:
        raise SelfRequest('You cannot request yourself')

    existing = find_share_between(viewer['id'], target['id'])
    if existing:
        if existing['status'] == STATUS_APPROVED:
            raise AlreadyExists('Already connected with this user')
        raise AlreadyExists('Request already pending with this user')

    db = get_db()
    try:
        cursor = db.execute(
            'INSERT INTO location_shares (owner_uid, viewer_uid, status, created_at) VALUES (?, ?, ?, ?)',
            (target['id'], viewer['id'], STATUS_PENDING, now_iso()),
        )
        db.commit()
    except sqlite3.IntegrityError:
        # Lost a race with a request in the other direction
        db.rollback()
        raise AlreadyExists('Request already pending with this user')

    share = share_to_json(get_share(cursor.lastrowid))
    notify_share_change(EVENT_INSERT, new=share)
    logger.info('Share request %s: %s -> %s', share['id'], viewer['id'], target['id'])
    return share, target


def approve_share(share_id, uid):
    """Approve a pending request addressed to this user."""
    db = get_db()
    row = db.execute(
        'SELECT * FROM location_shares WHERE id = ? AND owner_uid = ? AND status = ?',
        (share_id, uid, STATUS_PENDING),
    ).fetchone()
    if not row:
        raise NotFound('Request not found')

    db.execute(
        'UPDATE location_shares SET status = ?, approved_at = ? WHERE id = ? AND status = ?',
        (STATUS_APPROVED, now_iso(), share_id, STATUS_PENDING),
    )
    db.commit()

    share = share_to_json(get_share(share_id))
    notify_share_change(EVENT_UPDATE, new=share, old=share_to_json(row))
    logger.info('Share %s approved by %s', share_id, uid)
    return share


def share_deletion_label(row, uid):
    """What deleting this link means to the caller."""
    if row['status'] == STATUS_APPROVED:
        return 'disconnected'
    if row['owner_uid'] == uid:
        return 'rejected'
    return 'cancelled'


def delete_share(share_id, uid):
    """Reject, cancel or disconnect: delete a link the caller is part of."""
    db = get_db()
    row = db.execute(
        'SELECT * FROM location_shares WHERE id = ? AND (owner_uid = ? OR viewer_uid = ?)',
        (share_id, uid, uid),
    ).fetchone()
    if not row:
        raise NotFound('Connection not found')

    label = share_deletion_label(row, uid)
    db.execute('DELETE FROM location_shares WHERE id = ?', (share_id,))
    db.commit()

    notify_share_change(EVENT_DELETE, old=share_to_json(row))
    logger.info('Share %s %s by %s', share_id, label, uid)
    return label


def list_connections(uid):
    """Partition every link touching the user by status and role."""
    db = get_db()
    rows = db.execute(
        """
        SELECT s.*, u.firebase_uid AS other_uid, u.name AS other_name, u.email AS other_email
        FROM location_shares s
        JOIN users u
          ON u.firebase_uid = CASE WHEN s.owner_uid = ? THEN s.viewer_uid ELSE s.owner_uid END
        WHERE s.owner_uid = ? OR s.viewer_uid = ?
        ORDER BY s.created_at, s.id
    """,
        (uid, uid, uid),
    ).fetchall()

    result = {'pendingReceived': [], 'pendingSent': [], 'mutual': []}
    for row in rows:
        entry = share_to_json(row)
        entry['user'] = {
            'id': row['other_uid'],
            'name': row['other_name'],
            'email': row['other_email'],
        }
        if row['status'] == STATUS_APPROVED:
            result['mutual'].append(entry)
        elif row['owner_uid'] == uid:
            result['pendingReceived'].append(entry)
        else:
            result['pendingSent'].append(entry)
    return result


def resolve_friend_locations(uid):
    """Current locations of the user's mutual friends.

    Friends without a location row (ghosted or never published) are omitted.
    """
    friend_ids = get_mutual_friend_ids(uid)
    if not friend_ids:
        return []

    db = get_db()
    placeholders = ', '.join('?' for _ in friend_ids)
    rows = db.execute(
        f"""
        SELECT u.firebase_uid, u.name, l.latitude, l.longitude, l.updated_at
        FROM live_locations l
        JOIN users u ON u.firebase_uid = l.firebase_uid
        WHERE l.firebase_uid IN ({placeholders})
        ORDER BY u.name
    """,
        friend_ids,
    ).fetchall()

    return [
        {
            'uid': row['firebase_uid'],
            'name': row['name'],
            'latitude': row['latitude'],
            'longitude': row['longitude'],
            'updated_at': row['updated_at'],
            'stale': is_stale(row['updated_at']),
        }
        for row in rows
    ]


# ===================
# Authentication
# ===================


def verify_identity_token(token):
    """Verify an identity provider token and return (uid, name, email)."""
    # In testing mode, accept test tokens with format "test:email:name:uid"
    if app.config['TESTING_MODE'] and token.startswith('test:'):
        parts = token.split(':')
        if len(parts) < 4:
            raise InvalidRequest('Invalid test token format')
        return parts[3], parts[2], parts[1]

    if not app.config['FIREBASE_PROJECT_ID']:
        raise BackendError('Firebase auth not configured')

    try:
        claims = google_id_token.verify_firebase_token(
            token, google_requests.Request(), audience=app.config['FIREBASE_PROJECT_ID']
        )
    except ValueError as e:
        raise Unauthorized(f'Invalid token: {e}')

    if not claims:
        raise Unauthorized('Invalid token')

    uid = claims.get('user_id') or claims.get('sub')
    email = claims.get('email', '')
    return uid, claims.get('name'), email


def get_current_user():
    """Get current user from Authorization header."""
    auth_header = request.headers.get('Authorization', '')

    if not auth_header.startswith('Bearer '):
        return None

    user_id = verify_token(auth_header[7:])
    if not user_id:
        return None

    return get_user_by_uid(user_id)


def require_auth(f):
    """Decorator to require authentication."""

    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify(Unauthorized().to_dict()), 401
        g.current_user = user
        return f(*args, **kwargs)

    return decorated


def get_json_body():
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        raise InvalidRequest('Missing request body')
    return data


# ===================
# API Routes - General
# ===================


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({'status': 'ok', 'timestamp': now_iso()})


@app.route('/api/auth/firebase', methods=['POST'])
def auth_firebase():
    """
    Sign in with a Firebase ID token.

    Verifies the token, upserts the user row keyed by the Firebase uid and
    returns a session token.

    Request:
        { "id_token": "eyJ..." }

    Response:
        { "user": { "id", "name", "email" }, "token": "session_token", "isNew": true/false }
    """
    data = get_json_body()

    token = data.get('id_token')
    if not token or not isinstance(token, str):
        raise InvalidRequest('Missing id_token')

    uid, name, email = verify_identity_token(token)
    if not uid:
        raise Unauthorized('Token has no user id')

    user, is_new = upsert_user(uid, name, email)
    logger.info('Sign-in for %s (%s user)', uid, 'new' if is_new else 'existing')

    return jsonify({'user': user, 'token': generate_token(uid), 'isNew': is_new})


@app.route('/api/me', methods=['GET'])
@require_auth
def get_current_user_info():
    """Get current user info."""
    return jsonify(g.current_user)


# ===================
# API Routes - Location
# ===================


@app.route('/api/location', methods=['PUT'])
@require_auth
def publish_location():
    """Upsert the caller's current position."""
    user = g.current_user
    latitude, longitude = parse_coordinates(get_json_body())

    location = upsert_live_location(user['id'], latitude, longitude)
    return jsonify({'success': True, 'location': location})


@app.route('/api/location', methods=['GET'])
@require_auth
def get_own_location():
    """Get the caller's own stored location."""
    row = get_live_location(g.current_user['id'])
    return jsonify({'location': location_to_json(row) if row else None})


@app.route('/api/location', methods=['DELETE'])
@require_auth
def hide_location():
    """Delete the caller's location (enter ghost mode)."""
    old = delete_live_location(g.current_user['id'])
    return jsonify({'success': True, 'deleted': old is not None})


# ===================
# API Routes - Shares
# ===================


@app.route('/api/shares', methods=['POST'])
@require_auth
def create_share_request():
    """Request to see another user's location, by email."""
    data = get_json_body()
    share, target = send_share_request(g.current_user, data.get('email'))

    return jsonify(
        {'success': True, 'share': share, 'message': f'Request sent to {target["name"]}'}
    ), 201


@app.route('/api/shares', methods=['GET'])
@require_auth
def get_connections():
    """Get pending (received and sent) and mutual connections."""
    return jsonify(list_connections(g.current_user['id']))


@app.route('/api/shares/<int:share_id>/approve', methods=['POST'])
@require_auth
def approve_share_request(share_id):
    """Approve a pending request. Grants visibility in both directions."""
    share = approve_share(share_id, g.current_user['id'])
    return jsonify({'success': True, 'share': share})


@app.route('/api/shares/<int:share_id>', methods=['DELETE'])
@require_auth
def remove_share(share_id):
    """Reject, cancel or disconnect a link."""
    label = delete_share(share_id, g.current_user['id'])
    return jsonify({'success': True, 'action': label})


@app.route('/api/friends/locations', methods=['GET'])
@require_auth
def get_friend_locations():
    """Get current locations of mutual friends."""
    return jsonify({'friends': resolve_friend_locations(g.current_user['id'])})


# ===================
# Change Feed
# ===================


@socketio.on('connect')
def on_feed_connect(auth=None):
    """Authenticate a change-feed socket and join its user room."""
    init_db()
    token = (auth or {}).get('token') if isinstance(auth, dict) else None
    user_id = verify_token(token) if token else None
    user = get_user_by_uid(user_id) if user_id else None

    if not user:
        logger.info('Change feed connection refused (sid=%s)', request.sid)
        raise ConnectionRefusedError('unauthorized')

    join_room(user_room(user['id']))
    logger.info('Change feed connected for %s (sid=%s)', user['id'], request.sid)


@socketio.on('disconnect')
def on_feed_disconnect(reason=None):
    logger.info('Change feed disconnected (sid=%s, reason=%s)', request.sid, reason)


# ===================
# Error Handlers
# ===================


@app.errorhandler(BackendError)
def handle_backend_error(e):
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(sqlite3.Error)
def handle_database_error(e):
    logger.exception('Database error')
    return jsonify(BackendError().to_dict()), 500


@app.errorhandler(404)
def not_found(e):
    return jsonify(NotFound().to_dict()), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed', 'code': InvalidRequest.code}), 405


@app.errorhandler(500)
def server_error(e):
    return jsonify({'error': 'Internal server error', 'code': BackendError.code}), 500


# ===================
# CORS Support (for development)
# ===================


@app.after_request
def after_request(response):
    """Add CORS headers and cache control for API routes."""
    origin = request.headers.get('Origin', '*')
    response.headers['Access-Control-Allow-Origin'] = origin
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
    response.headers['Access-Control-Allow-Credentials'] = 'true'

    # Locations change constantly; never serve them from a cache
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'

    return response


@app.route('/api/<path:path>', methods=['OPTIONS'])
def handle_options(path):
    """Handle CORS preflight requests."""
    return '', 204


# ===================
# Main Entry Point
# ===================


def main():
    configure_logging()
    port = int(os.environ.get('PORT', 8600))
    debug = env_flag('FLASK_DEBUG', 'true')

    print(f"""
   Friendtrack Backend Server

   Local:   http://localhost:{port}
   Health:  http://localhost:{port}/api/health
""")

    socketio.run(app, host='0.0.0.0', port=port, debug=debug, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    main()
