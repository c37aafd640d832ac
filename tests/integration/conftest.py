"""
Pytest fixtures for server integration tests.
"""

import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path

import pytest
import requests

from .api_client import APIClient, make_test_token

# Default test server port
TEST_PORT = 8699
TEST_URL = f"http://localhost:{TEST_PORT}"


def wait_for_server(url, timeout=10):
    """Wait for server to be ready."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            response = requests.get(f"{url}/api/health", timeout=1)
            if response.status_code == 200:
                return True
        except requests.exceptions.ConnectionError:
            pass
        time.sleep(0.1)
    return False


@pytest.fixture(scope="session")
def server():
    """Start test server with temporary database for the entire test session."""
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "test.db")

    repo_root = Path(__file__).parent.parent.parent

    env = os.environ.copy()
    env['DATABASE_PATH'] = db_path
    env['SECRET_KEY'] = 'test-secret-key-for-integration-tests'
    env['PORT'] = str(TEST_PORT)
    env['FLASK_DEBUG'] = 'false'
    env['TESTING_MODE'] = 'true'

    process = subprocess.Popen(
        [sys.executable, '-m', 'friendtrack.app'],
        cwd=str(repo_root),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL
    )

    if not wait_for_server(TEST_URL):
        process.kill()
        process.wait()
        pytest.fail(f"Server failed to start on {TEST_URL}")

    yield TEST_URL

    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()

    try:
        os.unlink(db_path)
        os.rmdir(temp_dir)
    except OSError:
        pass


@pytest.fixture
def app(tmp_path):
    """The app in-process, on a fresh temporary database."""
    from friendtrack.app import app
    app.config.update(
        DATABASE=str(tmp_path / 'inprocess.db'),
        TESTING_MODE=True,
        TESTING=True,
    )
    return app


@pytest.fixture
def http(app):
    """Flask test client for the in-process app."""
    return app.test_client()


@pytest.fixture
def client(server) -> APIClient:
    """Fresh API client for each test (no stored auth)."""
    return APIClient(server)


@pytest.fixture
def unique_email():
    """Generate unique email for test isolation."""
    counter = [0]

    def _generate(prefix="user"):
        counter[0] += 1
        return f"{prefix}_{counter[0]}_{time.time_ns()}@test.com"

    return _generate


def _signed_in_user(server, email, name):
    return APIClient(server).sign_in(make_test_token(email, name))


@pytest.fixture
def alice(server, unique_email):
    """Signed-in user Alice."""
    return _signed_in_user(server, unique_email("alice"), "Alice")


@pytest.fixture
def bob(server, unique_email):
    """Signed-in user Bob."""
    return _signed_in_user(server, unique_email("bob"), "Bob")


@pytest.fixture
def carol(server, unique_email):
    """Signed-in user Carol."""
    return _signed_in_user(server, unique_email("carol"), "Carol")


@pytest.fixture
def alice_client(server, alice) -> APIClient:
    """API client signed in as Alice."""
    c = APIClient(server)
    c.set_token(alice.token)
    return c


@pytest.fixture
def bob_client(server, bob) -> APIClient:
    """API client signed in as Bob."""
    c = APIClient(server)
    c.set_token(bob.token)
    return c


@pytest.fixture
def carol_client(server, carol) -> APIClient:
    """API client signed in as Carol."""
    c = APIClient(server)
    c.set_token(carol.token)
    return c


@pytest.fixture
def alice_and_bob_friends(alice_client, bob_client, alice, bob):
    """Alice and Bob as mutual friends. Returns the share id."""
    # Alice asks to see Bob; Bob approves
    share = alice_client.send_request(bob.email)['share']
    bob_client.approve(share['id'])
    return share['id']
