#!/usr/bin/env python3
"""Test the route table and error pages through the Flask test client"""

import fnmatch
import os
from importlib import resources

import pytest

from qrdrop import app

ROOT = os.path.dirname(os.path.abspath(__file__))


@pytest.fixture
def client(receive_session):
    return app.create_app(receive_session).test_client()


def test_route_table_is_fixed(receive_session):
    flask_app = app.create_app(receive_session)
    rules = {(rule.rule, method) for rule in flask_app.url_map.iter_rules()
             for method in rule.methods - {"HEAD", "OPTIONS"}}
    assert rules == {
        ("/", "GET"),
        ("/receive", "GET"),
        ("/receive", "POST"),
        ("/receive_done", "GET"),
        ("/error", "GET"),
        ("/favicon.ico", "GET"),
        ("/<reference>", "GET"),
        ("/static/<path:filename>", "GET"),
    }


def test_slash_redirects_elsewhere(client):
    response = client.get("/")
    assert response.status_code == 301
    assert response.headers["Location"] == app.EASTER_EGG_URL


def test_receive_form(client):
    response = client.get("/receive")
    assert response.status_code == 200
    assert b'enctype="multipart/form-data"' in response.data
    assert b'type="file"' in response.data


@pytest.mark.parametrize("path", ["/receive_done", "/error"])
def test_static_pages(client, path):
    response = client.get(path)
    assert response.status_code == 200
    assert response.mimetype == "text/html"


def test_bundled_assets(client):
    css = client.get("/static/css/style.css")
    assert css.status_code == 200
    assert css.mimetype == "text/css"
    icon = client.get("/favicon.ico")
    assert icon.status_code == 200
    assert icon.mimetype == "image/svg+xml"


@pytest.mark.parametrize("method,path", [
    ("GET", "/some/nested/path"),
    ("PUT", "/receive"),
    ("DELETE", "/"),
    ("GET", "/static/missing.css"),
])
def test_unmatched_requests_get_teapot(client, method, path):
    response = client.open(path, method=method)
    assert response.status_code == 418
    assert b"Something went wrong" in response.data


def test_unexpected_error_is_500(send_session, monkeypatch):
    def boom(token):
        raise RuntimeError(f"exploded reading {send_session.root_dir}")

    monkeypatch.setattr(app, "decode_reference", boom)
    client = app.create_app(send_session).test_client()
    response = client.get("/" + app.encode_reference("x"))
    assert response.status_code == 500
    assert b"Something went wrong" in response.data
    assert send_session.root_dir.encode() not in response.data
    assert b"Traceback" not in response.data


def test_transfer_errors_redirect_to_error_page(client, caplog):
    response = client.get("/" + app.encode_reference("anything.txt"))
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/error")
    assert "mode-not-send" in caplog.text


def test_validate_session(tmp_path):
    app.validate_session(app.SessionState.build(None, str(tmp_path)))
    with pytest.raises(app.TransferIOError):
        app.validate_session(app.SessionState.build(None, str(tmp_path / "nope")))
    with pytest.raises(app.TransferIOError):
        app.validate_session(app.SessionState.build("missing.bin", str(tmp_path)))


def test_main_exits_on_bad_address(tmp_path, monkeypatch):
    monkeypatch.setattr(app, "register_signal_handlers", lambda: None)
    monkeypatch.setattr(app, "setup_logging", lambda *args: None)
    assert app.main(["-r", str(tmp_path), "-i", "not-an-ip"]) == 1


def test_main_exits_on_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(app, "register_signal_handlers", lambda: None)
    monkeypatch.setattr(app, "setup_logging", lambda *args: None)
    assert app.main(["-r", str(tmp_path), "-i", "192.168.1.11", "missing.pdf"]) == 1


def test_main_starts_server(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(app, "register_signal_handlers", lambda: None)
    monkeypatch.setattr(app, "setup_logging", lambda *args: None)
    monkeypatch.setattr(app, "start_server", lambda *args: calls.append(args))
    (tmp_path / "a.txt").write_text("hi")

    assert app.main(["-r", str(tmp_path), "-i", "192.168.1.11", "-p", "6000", "-l", "a.txt"]) == 0
    session, address, port, light_term, copy_url = calls[0]
    assert session.selected_file == "a.txt"
    assert str(address) == "192.168.1.11"
    assert port == 6000
    assert light_term and not copy_url


def test_main_rejects_empty_address(tmp_path, monkeypatch):
    monkeypatch.setattr(app, "register_signal_handlers", lambda: None)
    monkeypatch.setattr(app, "setup_logging", lambda *args: None)
    monkeypatch.setattr(app, "start_server", lambda *args: pytest.fail("server started"))
    assert app.main(["-r", str(tmp_path), "-i", ""]) == 1


def test_pages_and_assets_ship_inside_the_package(receive_session):
    flask_app = app.create_app(receive_session)
    assert flask_app.root_path == os.path.dirname(os.path.abspath(app.__file__))

    package = resources.files("qrdrop")
    for name in ("base.html", "receive.html", "receive_done.html", "error.html"):
        assert (package / "templates" / name).is_file()
    assert (package / "static" / "css" / "style.css").is_file()
    assert (package / "static" / "favicon.svg").is_file()


def test_package_data_covers_every_resource():
    tomllib = pytest.importorskip("tomllib")
    with open(os.path.join(ROOT, "pyproject.toml"), "rb") as f:
        patterns = tomllib.load(f)["tool"]["setuptools"]["package-data"]["qrdrop"]

    package_dir = os.path.dirname(os.path.abspath(app.__file__))
    for dirpath, dirnames, filenames in os.walk(package_dir):
        dirnames[:] = [d for d in dirnames if d != "__pycache__"]
        for name in filenames:
            if name.endswith(".py"):
                continue
            rel = os.path.relpath(os.path.join(dirpath, name), package_dir).replace(os.sep, "/")
            assert any(fnmatch.fnmatch(rel, pattern) for pattern in patterns), rel
