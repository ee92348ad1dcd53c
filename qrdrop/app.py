#!/usr/bin/env python3
"""
QR Drop - one-shot file transfer between a workstation and a phone
Prints a QR code for the service URL; the phone either downloads the one
selected file (send mode) or uploads files into a directory (receive mode)
"""

import os
import sys
import signal
import shutil
import logging
import argparse
import binascii
import base64
import ipaddress
import mimetypes
import re
import threading
from dataclasses import dataclass
from typing import Optional

from flask import Flask, Request, current_app, redirect, render_template, request, send_file
from werkzeug.exceptions import HTTPException
import netifaces
import pyperclip
import qrcode

__version__ = "0.4.0"

DEFAULT_PORT = 5566
UPLOAD_CHUNK = 1 * 1024 * 1024  # 1 MB copy chunks
EASTER_EGG_URL = "https://www.youtube.com/watch?v=oHg5SJYRHA0"

log = logging.getLogger("qrdrop")


# ─── Errors ──────────────────────────────────────────────────────

class TransferError(Exception):
    """Base class for every failure the service knows how to report."""
    kind = "transfer"

    def __str__(self):
        detail = super().__str__()
        return f"{self.kind}: {detail}" if detail else self.kind


class AddressError(TransferError):
    kind = "address"


class InvalidAddressError(AddressError):
    kind = "address-invalid"


class NoInterfaceError(AddressError):
    kind = "address-no-interface"


class ExplicitAddressRequiredError(AddressError):
    kind = "address-explicit-required"


class UnroutableAddressError(AddressError):
    kind = "address-unroutable"


class DecodeError(TransferError):
    kind = "decode"


class MalformedReferenceError(DecodeError):
    kind = "decode-malformed"


class NotUtf8ReferenceError(DecodeError):
    kind = "decode-not-utf8"


class ModeError(TransferError):
    kind = "mode"


class NotSendModeError(ModeError):
    kind = "mode-not-send"


class FileMismatchError(ModeError):
    kind = "mode-mismatch"


class TransferIOError(TransferError):
    kind = "io"


class MultipartError(TransferError):
    kind = "multipart-parse"


# ─── Address discovery ───────────────────────────────────────────

def _strip_scope(addr):
    # netifaces reports link-local v6 addresses as "fe80::1%eth0"
    return addr.split("%", 1)[0]


def _usable(ip):
    return not (ip.is_loopback or ip.is_link_local or ip.is_unspecified)


class InterfaceDiscovery:
    """Pick an address from the host interfaces using netifaces."""

    def discover(self, prefer_ipv6=False):
        family = netifaces.AF_INET6 if prefer_ipv6 else netifaces.AF_INET
        for name in netifaces.interfaces():
            addrs = netifaces.ifaddresses(name)
            ips = []
            for fam in (netifaces.AF_INET, netifaces.AF_INET6):
                for entry in addrs.get(fam, []):
                    try:
                        ips.append((fam, ipaddress.ip_address(_strip_scope(entry.get("addr", "")))))
                    except ValueError:
                        continue
            # an interface without addresses is down or unconfigured
            if not ips or any(ip.is_loopback for _, ip in ips):
                continue

            log.debug("Default interface is %s", name)
            for fam, ip in ips:
                if fam == family and _usable(ip):
                    log.debug("Found IP address %s for interface %s", ip, name)
                    return ip
            raise UnroutableAddressError(
                f"unable to find a valid IP address to bind with on {name}; "
                "see the --ip-address option to specify the IP address to use")

        raise NoInterfaceError(
            "unable to find a default interface; "
            "see the --ip-address option to specify the IP address to use")


class ExplicitOnlyDiscovery:
    """Stand-in for platforms where interfaces are not enumerated."""

    def discover(self, prefer_ipv6=False):
        raise ExplicitAddressRequiredError(
            f"on {sys.platform} the --ip-address option is mandatory")


def default_discovery():
    if sys.platform == "win32":
        return ExplicitOnlyDiscovery()
    return InterfaceDiscovery()


def resolve_address(explicit=None, prefer_ipv6=False, discovery=None):
    """Return the address to bind to and to advertise in the QR code.

    An explicit address is only parsed, the interfaces are never inspected.
    Otherwise the first active, non loopback interface provides the first
    address of the preferred family.
    """
    if explicit is not None:
        try:
            return ipaddress.ip_address(explicit)
        except ValueError as exc:
            raise InvalidAddressError(str(exc)) from exc

    if discovery is None:
        discovery = default_discovery()
    ip = discovery.discover(prefer_ipv6)
    if ip.is_loopback:
        raise UnroutableAddressError(
            f"{ip} is a loopback address and cannot be reached from another device")
    return ip


# ─── Reference codec ─────────────────────────────────────────────

_REFERENCE_RE = re.compile(r"^[A-Za-z0-9_-]*$")


def encode_reference(name):
    """URL safe base64 of the UTF-8 file name, without padding."""
    return base64.urlsafe_b64encode(name.encode("utf-8")).rstrip(b"=").decode("ascii")


def decode_reference(token):
    """Inverse of encode_reference; rejects anything encode would never produce."""
    if not _REFERENCE_RE.match(token) or len(token) % 4 == 1:
        raise MalformedReferenceError(f"invalid reference {token!r}")
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
    except (binascii.Error, ValueError) as exc:
        raise MalformedReferenceError(f"invalid reference {token!r}") from exc
    # reject non canonical trailing bits so each name has exactly one reference
    if base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") != token:
        raise MalformedReferenceError(f"invalid reference {token!r}")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise NotUtf8ReferenceError(f"reference {token!r} is not valid UTF-8") from exc


# ─── Session state ───────────────────────────────────────────────

@dataclass(frozen=True)
class SessionState:
    """Read-only context shared by every request handler."""
    selected_file: Optional[str]
    root_dir: str

    @classmethod
    def build(cls, selected_file=None, root_dir=None):
        return cls(selected_file or None, os.path.abspath(root_dir or os.getcwd()))

    @property
    def send_mode(self):
        return self.selected_file is not None

    @property
    def selected_path(self):
        if self.selected_file is None:
            return None
        return os.path.join(self.root_dir, self.selected_file)


def compose_url(address, port, session):
    """Build the one URL the QR code carries."""
    ip = ipaddress.ip_address(str(address))
    host = f"[{ip}]" if ip.version == 6 else str(ip)
    if session.send_mode:
        return f"http://{host}:{port}/{encode_reference(session.selected_file)}"
    return f"http://{host}:{port}/receive"


def print_qr_code(url, light_term=False, out=None):
    """Draw the URL as a QR code on the terminal."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        border=2,
    )
    qr.add_data(url)
    qr.make(fit=True)
    # dark terminals need inverted blocks so that dark modules stay dark
    qr.print_ascii(out=out or sys.stdout, invert=not light_term)


# ─── Request handlers ────────────────────────────────────────────

class TransferRequest(Request):
    """Request whose form parser reports broken multipart framing."""
    max_form_memory_size = None
    max_form_parts = None

    def make_form_data_parser(self):
        parser = super().make_form_data_parser()
        parser.silent = False
        return parser


def _session():
    return current_app.extensions["qrdrop"]


def index():
    """Rickroll curious cats"""
    return redirect(EASTER_EGG_URL, code=301)


def get_receive():
    return render_template("receive.html")


def get_receive_done():
    return render_template("receive_done.html")


def get_error():
    return render_template("error.html")


def favicon():
    return current_app.send_static_file("favicon.svg")


def download(reference):
    """Serve the configured file when the reference names it."""
    session = _session()
    name = decode_reference(reference)
    if not session.send_mode:
        raise NotSendModeError(f"download of {name!r} requested in receive mode")
    if name != session.selected_file:
        raise FileMismatchError(
            f"requested file {name!r} differs from served one {session.selected_file!r}")

    # the header carries only the last path component, not the full decoded name
    download_name = os.path.basename(name) or name
    mime = mimetypes.guess_type(download_name)[0] or "application/octet-stream"
    try:
        response = send_file(
            session.selected_path,
            mimetype=mime,
            as_attachment=True,
            download_name=download_name,
            max_age=0,
        )
    except OSError as exc:
        raise TransferIOError(f"unable to read {session.selected_path}: {exc}") from exc
    log.info("Sending %s to %s", session.selected_path, request.remote_addr)
    return response


def safe_upload_name(declared):
    """Keep only the last path component of a client supplied file name."""
    name = re.split(r"[\\/]", declared)[-1].strip()
    if name in ("", ".", ".."):
        return None
    return name


def store_part(storage, root_dir):
    """Write one uploaded part below root_dir; returns the destination or None."""
    name = safe_upload_name(storage.filename)
    if name is None:
        log.warning("Skipping part with unusable file name %r", storage.filename)
        return None
    if name != storage.filename:
        log.warning("Declared file name %r stored as %r", storage.filename, name)

    dest = os.path.join(root_dir, name)
    content_type = storage.content_type or "text/plain"
    try:
        with open(dest, "wb") as f:
            shutil.copyfileobj(storage.stream, f, length=UPLOAD_CHUNK)
    except OSError as exc:
        log.error("Unable to store file %s to %s: %s", storage.filename, dest, exc)
        return None
    log.info("Received file with content-type %s stored in %s", content_type, dest)
    return dest


def upload():
    """Store every named part of a multipart form, best effort per part."""
    session = _session()
    if request.mimetype != "multipart/form-data":
        raise MultipartError(f"expected multipart/form-data, got {request.mimetype or 'nothing'}")
    try:
        parts = list(request.files.items(multi=True))
    except ValueError as exc:
        raise MultipartError(str(exc)) from exc

    stored = 0
    for field, storage in parts:
        if not storage.filename:
            log.debug("Ignoring field %s without a file name", field)
            continue
        if store_part(storage, session.root_dir):
            stored += 1
    log.info("Upload from %s finished: %d of %d part(s) stored",
             request.remote_addr, stored, len(parts))
    return redirect("/receive_done")


# ─── Error mapping ───────────────────────────────────────────────

def handle_transfer_error(error):
    log.error("Request %s %s failed: %s", request.method, request.path, error)
    return redirect("/error")


def handle_http_error(error):
    """Unmatched routes and protocol errors all get the teapot page."""
    log.warning("Request %s %s rejected with %s", request.method, request.path, error.code)
    return render_template("error.html"), 418


def handle_unexpected_error(error):
    log.exception("Unexpected error serving %s %s", request.method, request.path)
    return render_template("error.html"), 500


# Fixed route table: (rule, method, endpoint, view)
ROUTES = (
    ("/", "GET", "index", index),
    ("/receive", "GET", "get_receive", get_receive),
    ("/receive", "POST", "post_receive", upload),
    ("/receive_done", "GET", "get_receive_done", get_receive_done),
    ("/error", "GET", "get_error", get_error),
    ("/favicon.ico", "GET", "favicon", favicon),
    ("/<reference>", "GET", "download", download),
)


def create_app(session):
    """Build the Flask app bound to one SessionState."""
    app = Flask(__name__, static_folder="static", template_folder="templates")
    app.request_class = TransferRequest
    # uploads are unbounded on purpose
    app.config["MAX_CONTENT_LENGTH"] = None
    app.config["MAX_FORM_MEMORY_SIZE"] = None
    app.config["MAX_FORM_PARTS"] = None
    app.extensions["qrdrop"] = session

    for rule, method, endpoint, view in ROUTES:
        app.add_url_rule(rule, endpoint, view, methods=[method])

    app.register_error_handler(TransferError, handle_transfer_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    return app


# ─── Process setup ───────────────────────────────────────────────

def setup_logging(debug=False, http_debug=False):
    """Configure the qrdrop and werkzeug loggers, once per process."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(logging.INFO)

    log.setLevel(logging.DEBUG if debug else logging.INFO)
    logging.getLogger("werkzeug").setLevel(logging.INFO if http_debug else logging.ERROR)
    log.debug("qrdrop log level: %s, werkzeug log level: %s",
              logging.getLevelName(log.level),
              logging.getLevelName(logging.getLogger("werkzeug").level))


def register_signal_handlers():
    """Exit right away on SIGINT/SIGTERM/SIGQUIT; in-flight requests are dropped."""
    def _shutdown(signum, frame):
        log.warning("Received signal %s. Shutting down QR Drop server", signal.Signals(signum).name)
        sys.exit(0)

    for name in ("SIGINT", "SIGTERM", "SIGQUIT"):
        sig = getattr(signal, name, None)
        if sig is not None:
            signal.signal(sig, _shutdown)
    log.debug("Registered signal handlers")


def copy_to_clipboard(text):
    """Copy the URL in the background; a missing clipboard is not fatal."""
    def _copy():
        try:
            pyperclip.copy(text)
            log.info("Service URL copied to clipboard")
        except pyperclip.PyperclipException as exc:
            log.warning("Could not copy URL to clipboard: %s", exc)

    threading.Thread(target=_copy, daemon=True).start()


def build_parser():
    parser = argparse.ArgumentParser(
        prog="qrdrop",
        description="Copy files over WiFi to/from a mobile device through a QR code")
    parser.add_argument('filename', nargs='?', help='File to send to the mobile device')
    parser.add_argument('-r', '--root-dir', help='Directory to store files in receive mode')
    parser.add_argument('-p', '--port', type=int, default=DEFAULT_PORT, help='Port to bind the HTTP server to')
    parser.add_argument('-i', '--ip-address', help='IP address to bind to, default to the primary interface')
    parser.add_argument('-6', '--ipv6', action='store_true', help='Prefer IPv6 over IPv4')
    parser.add_argument('-l', '--light-term', action='store_true', help='Draw QR in a terminal with light background')
    parser.add_argument('-c', '--copy-url', action='store_true', help='Copy the service URL to the clipboard')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable QR Drop debug logging')
    parser.add_argument('--http-debug', action='store_true', help='Log every HTTP request')
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def validate_session(session):
    """Startup checks on the directories and file the session points to."""
    if not os.path.isdir(session.root_dir):
        raise TransferIOError(f"root directory {session.root_dir} does not exist")
    if session.send_mode and not os.path.isfile(session.selected_path):
        raise TransferIOError(f"file {session.selected_path} does not exist")


def start_server(session, address, port=DEFAULT_PORT, light_term=False, copy_url=False):
    """Print the QR code and serve until the process is terminated."""
    url = compose_url(address, port, session)
    if session.send_mode:
        log.info("Send mode enabled for file %s", os.path.realpath(session.selected_path))
    else:
        log.info("Receive mode enabled inside directory %s", os.path.realpath(session.root_dir))
    log.info("Scan this QR code with a QR code reader app to open the URL %s", url)

    print_qr_code(url, light_term=light_term)
    print(f"\n{url}")
    print("Press Ctrl+C to stop the server")
    if copy_url:
        copy_to_clipboard(url)

    app = create_app(session)
    app.run(host=str(address), port=port, debug=False, threaded=True)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.debug, args.http_debug)
    log.debug("Command line options are %s", vars(args))
    register_signal_handlers()

    try:
        session = SessionState.build(args.filename, args.root_dir)
        validate_session(session)
        address = resolve_address(args.ip_address, args.ipv6)
        start_server(session, address, args.port, args.light_term, args.copy_url)
    except TransferError as exc:
        log.error("Error running QR Drop: %s", exc)
        return 1
    except OSError as exc:
        log.error("Error running QR Drop: %s", exc)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
