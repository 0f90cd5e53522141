import pytest

from callrelay.config import TestingConfig
from callrelay.server import create_app


@pytest.fixture
def server():
    return create_app(TestingConfig(ANNOUNCE_PRESENCE=False))


@pytest.fixture
def connect(server):
    app, socketio, _ = server
    clients = []

    def _connect(flask_client=None):
        client = socketio.test_client(app, flask_test_client=flask_client or app.test_client())
        clients.append(client)
        return client

    yield _connect
    for client in clients:
        if client.is_connected():
            client.disconnect()
