"""Shared fixtures: sample directories and a live threaded server"""

import threading

import pytest
from werkzeug.serving import make_server

from qrdrop import app

SAMPLE_NAME = "test document.pdf"
SAMPLE_BYTES = b"PDF content " * 2000


@pytest.fixture
def send_session(tmp_path):
    """Session in send mode serving one sample file"""
    (tmp_path / SAMPLE_NAME).write_bytes(SAMPLE_BYTES)
    return app.SessionState.build(SAMPLE_NAME, str(tmp_path))


@pytest.fixture
def receive_session(tmp_path):
    """Session in receive mode storing into an empty directory"""
    root = tmp_path / "uploads"
    root.mkdir()
    return app.SessionState.build(None, str(root))


@pytest.fixture
def serve():
    """Start the app for a session on 127.0.0.1 and return its base URL"""
    servers = []

    def _serve(session):
        server = make_server("127.0.0.1", 0, app.create_app(session), threaded=True)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_port}"

    yield _serve
    for server in servers:
        server.shutdown()
        server.server_close()
