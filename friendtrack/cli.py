#!/usr/bin/env python3
"""
Friendtrack CLI - Command line client for the Friendtrack API.

Usage:
    friendtrack --help
    friendtrack login --id-token <firebase-id-token>
    friendtrack shares list
    friendtrack friends watch
"""

import functools
import json
import sys
from dataclasses import asdict
from pathlib import Path

import click

from .client import DEFAULT_SERVER, FriendtrackClient
from .errors import FriendtrackError, position_error_for_code
from .geo import format_distance, format_time_ago, haversine_m
from .logconfig import configure_logging
from .models import PositionSample
from .publisher import DEFAULT_ACCURACY_THRESHOLD_M, LocationPublisher
from .session import Session

# ===================
# Configuration
# ===================

CONFIG_DIR = Path.home() / '.friendtrack'
CONFIG_FILE = CONFIG_DIR / 'config.json'


def get_config():
    """Load configuration from file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return json.load(f)
    return {
        'server': DEFAULT_SERVER,
        'token': None,
        'accuracy_threshold': DEFAULT_ACCURACY_THRESHOLD_M,
    }


def save_config(config):
    """Save configuration to file."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=2)


def get_server():
    return get_config().get('server', DEFAULT_SERVER)


def get_token():
    return get_config().get('token')


def get_accuracy_threshold():
    return float(get_config().get('accuracy_threshold', DEFAULT_ACCURACY_THRESHOLD_M))


def save_token(token):
    config = get_config()
    config['token'] = token
    save_config(config)


def clear_token():
    config = get_config()
    config['token'] = None
    save_config(config)


def get_client():
    return FriendtrackClient(get_server(), get_token())


# ===================
# Output Helpers
# ===================


def handle_errors(f):
    """Print Friendtrack errors the way the API reports them and exit 1."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except FriendtrackError as e:
            click.echo(f'Error: {e.message}', err=True)
            sys.exit(1)

    return wrapper


def output_json(data):
    """Output data as formatted JSON."""
    click.echo(json.dumps(data, indent=2, default=str))


def output_table(rows, headers):
    """Output data as a simple table."""
    if not rows:
        click.echo('No data')
        return

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    header_line = '  '.join(h.ljust(widths[i]) for i, h in enumerate(headers))
    click.echo(header_line)
    click.echo('-' * len(header_line))

    for row in rows:
        line = '  '.join(str(cell).ljust(widths[i]) for i, cell in enumerate(row))
        click.echo(line)


def friend_rows(friend_locations, origin=None):
    """Table rows for friend locations, with distance when an origin is known."""
    rows = []
    for loc in friend_locations:
        updated = format_time_ago(loc.updated_at)
        if loc.stale:
            updated += ' (stale)'
        row = [loc.name, f'{loc.latitude:.5f}, {loc.longitude:.5f}']
        if origin is not None:
            row.append(format_distance(haversine_m(origin[0], origin[1], loc.latitude, loc.longitude)))
        row.append(updated)
        rows.append(row)
    return rows


def read_position_stream(lines):
    """Yield PositionSamples and PositionErrors from JSON lines.

    Each line is {"latitude", "longitude", "accuracy"} or {"error": code}.
    """
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
            if 'error' in item:
                yield position_error_for_code(item['error'], item.get('message'))
            else:
                yield PositionSample.from_json(item)
        except (ValueError, KeyError, TypeError) as e:
            click.echo(f'Skipping line {number}: {e}', err=True)


# ===================
# CLI Groups
# ===================


@click.group()
@click.version_option(version='0.1.0')
@click.option('--verbose', '-v', is_flag=True, help='Log debug output to stderr')
def cli(verbose):
    """Friendtrack CLI - share live locations with friends."""
    if verbose:
        configure_logging('DEBUG')


# ===================
# Config Commands
# ===================


@cli.command()
@click.option('--server', help='Set server URL')
@click.option('--accuracy-threshold', type=float, help='Max sample accuracy (m) to publish')
@click.option('--show', is_flag=True, help='Show current config')
def config(server, accuracy_threshold, show):
    """Configure CLI settings."""
    cfg = get_config()

    if show:
        click.echo(f'Server:    {cfg.get("server", DEFAULT_SERVER)}')
        click.echo(f'Token:     {"(set)" if cfg.get("token") else "(none)"}')
        click.echo(
            f'Threshold: {cfg.get("accuracy_threshold", DEFAULT_ACCURACY_THRESHOLD_M):g} m'
        )
        return

    if server or accuracy_threshold is not None:
        if server:
            cfg['server'] = server.rstrip('/')
            click.echo(f'Server set to: {server}')
        if accuracy_threshold is not None:
            cfg['accuracy_threshold'] = accuracy_threshold
            click.echo(f'Accuracy threshold set to: {accuracy_threshold:g} m')
        save_config(cfg)
        return

    ctx = click.get_current_context()
    click.echo(ctx.get_help())


# ===================
# Auth Commands
# ===================


@cli.command()
@click.option('--id-token', required=True, help='Firebase ID token from the sign-in flow')
@handle_errors
def login(id_token):
    """Sign in with an identity provider token."""
    client = FriendtrackClient(get_server())
    user = client.sign_in(id_token)
    save_token(client.token)
    click.echo(f'Logged in as {user.email}')


@cli.command()
def logout():
    """Clear saved authentication."""
    clear_token()
    click.echo('Logged out')


@cli.command()
@handle_errors
def whoami():
    """Show current authenticated user."""
    if not get_token():
        click.echo('Not logged in')
        sys.exit(1)

    user = get_client().me()
    click.echo(f'Logged in as: {user.name} <{user.email}>')
    click.echo(f'User ID: {user.id}')


@cli.command()
@handle_errors
def health():
    """Check server health."""
    data = get_client().health()
    click.echo(f'Status: {data.get("status", "unknown")}')
    click.echo(f'Server: {get_server()}')


# ===================
# Location Commands
# ===================


@cli.group()
def location():
    """Manage your live location."""
    pass


@location.command('publish')
@click.option('--lat', 'latitude', required=True, type=float, help='Latitude')
@click.option('--lng', 'longitude', required=True, type=float, help='Longitude')
@click.option('--accuracy', default=0.0, type=float, help='Sample accuracy in meters')
@handle_errors
def location_publish(latitude, longitude, accuracy):
    """Publish a single position sample."""
    publisher = LocationPublisher(get_client(), get_accuracy_threshold())
    sample = PositionSample(latitude=latitude, longitude=longitude, accuracy=accuracy)

    if publisher.on_sample(sample):
        click.echo('Location published')
    elif publisher.last_accepted is None:
        click.echo(
            f'Not published: accuracy {accuracy:g} m exceeds '
            f'{publisher.accuracy_threshold:g} m',
            err=True,
        )
        sys.exit(1)
    else:
        click.echo('Error: Location publish failed', err=True)
        sys.exit(1)


@location.command('get')
@click.option('--format', 'fmt', type=click.Choice(['json', 'text']), default='text')
@handle_errors
def location_get(fmt):
    """Get your stored location."""
    loc = get_client().get_location()

    if fmt == 'json':
        output_json(asdict(loc) if loc else None)
        return

    if not loc:
        click.echo('No location stored')
        return

    click.echo(f'Location: {loc.latitude:.5f}, {loc.longitude:.5f}')
    click.echo(f'Updated: {format_time_ago(loc.updated_at)}')


@location.command('hide')
@handle_errors
def location_hide():
    """Go ghost: remove your location so friends cannot see it."""
    deleted = get_client().delete_location()
    click.echo('Location hidden' if deleted else 'No location was stored')


@location.command('track')
@click.argument('samples', type=click.File('r'), default='-')
@click.option('--private', is_flag=True, help='Start in ghost mode (nothing is published)')
@handle_errors
def location_track(samples, private):
    """Publish a stream of JSON-lines position samples (stdin by default)."""
    publisher = LocationPublisher(get_client(), get_accuracy_threshold())
    if private:
        publisher.set_private(True)

    try:
        published = publisher.consume(read_position_stream(samples))
    except KeyboardInterrupt:
        publisher.stop()
        published = None

    if published is not None:
        click.echo(f'Published {published} sample(s)')
    if publisher.position is not None:
        click.echo(f'Last position: {publisher.position.latitude:.5f}, {publisher.position.longitude:.5f}')
    if publisher.warning is not None:
        click.echo(f'Warning: {publisher.warning.message}', err=True)
    if publisher.error is not None:
        click.echo(f'Error: {publisher.error.message}', err=True)
        sys.exit(1)


# ===================
# Share Commands
# ===================


@cli.group()
def shares():
    """Manage location shares (friend requests)."""
    pass


@shares.command('request')
@click.option('--email', required=True, help='Email of the user whose location you want to see')
@handle_errors
def shares_request(email):
    """Ask to see another user's location."""
    share = get_client().send_request(email)
    click.echo(f'Request sent to {email} (id {share.id})')


@shares.command('list')
@click.option('--format', 'fmt', type=click.Choice(['json', 'table']), default='table')
@handle_errors
def shares_list(fmt):
    """List pending requests and friends."""
    connections = get_client().list_connections()

    if fmt == 'json':
        output_json(asdict(connections))
        return

    sections = [
        ('Incoming requests', connections.pending_received),
        ('Outgoing requests', connections.pending_sent),
        ('Friends', connections.mutual),
    ]
    for i, (title, items) in enumerate(sections):
        if i:
            click.echo()
        if not items:
            click.echo(f'No {title.lower()}')
            continue
        click.echo(f'{title}:')
        rows = [[c.share.id, c.user.email, c.user.name] for c in items]
        output_table(rows, ['ID', 'Email', 'Name'])


@shares.command('approve')
@click.option('--id', 'share_id', required=True, type=int, help='Request ID to approve')
@handle_errors
def shares_approve(share_id):
    """Approve an incoming request; you become friends."""
    get_client().approve(share_id)
    click.echo('Request approved')


def _delete_share_command(name, help_text):
    @shares.command(name, help=help_text)
    @click.option('--id', 'share_id', required=True, type=int, help='Share ID')
    @handle_errors
    def command(share_id):
        action = get_client().delete_share(share_id)
        click.echo(f'Share {action}')

    return command


shares_reject = _delete_share_command('reject', 'Reject an incoming request.')
shares_cancel = _delete_share_command('cancel', 'Cancel an outgoing request.')
shares_disconnect = _delete_share_command('disconnect', 'Stop sharing with a friend.')


# ===================
# Friend Commands
# ===================


@cli.group()
def friends():
    """See your friends' locations."""
    pass


@friends.command('locations')
@click.option('--lat', 'latitude', type=float, help='Your latitude, to show distances')
@click.option('--lng', 'longitude', type=float, help='Your longitude, to show distances')
@click.option('--format', 'fmt', type=click.Choice(['json', 'table']), default='table')
@handle_errors
def friends_locations(latitude, longitude, fmt):
    """Show friends' current locations."""
    locations = get_client().resolve_friend_locations()

    if fmt == 'json':
        output_json([asdict(loc) for loc in locations])
        return

    if not locations:
        click.echo('No friend locations')
        return

    origin = (latitude, longitude) if latitude is not None and longitude is not None else None
    headers = ['Name', 'Position'] + (['Distance'] if origin else []) + ['Updated']
    output_table(friend_rows(locations, origin), headers)


@friends.command('watch')
@handle_errors
def friends_watch():
    """Print friends' locations as they change (Ctrl+C to stop)."""
    if not get_token():
        click.echo('Not logged in')
        sys.exit(1)

    def show(state):
        click.echo()
        locations = sorted(state.locations.values(), key=lambda loc: loc.name.lower())
        if locations:
            output_table(friend_rows(locations), ['Name', 'Position', 'Updated'])
        else:
            click.echo('No friend locations')

    try:
        with Session(get_client(), get_accuracy_threshold(), on_update=show) as session:
            session.start()
            click.echo(f'Watching friends of {session.user.email} (Ctrl+C to stop)')
            session.live_view.wait()
    except KeyboardInterrupt:
        click.echo('Stopped')


# ===================
# Entry Point
# ===================

if __name__ == '__main__':
    cli()
