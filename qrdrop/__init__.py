"""QR Drop - copy files over WiFi to/from a mobile device through a QR code"""

from qrdrop.app import __version__, create_app, main

__all__ = ["__version__", "create_app", "main"]
