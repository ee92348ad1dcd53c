"""
WSGI entry point for running QR Drop under an external server (gunicorn etc.)

    gunicorn qrdrop.wsgi:app

Builds the app from the environment instead of the command line:
  - QRDROP_FILE      file to send; receive mode when unset
  - QRDROP_ROOT_DIR  upload directory, defaults to ./uploads in the working directory
No QR code is printed and no address discovery happens; the server binds
wherever it is told to.
"""
import os

from qrdrop.app import SessionState, create_app, validate_session

root_dir = os.environ.get('QRDROP_ROOT_DIR', os.path.join(os.getcwd(), 'uploads'))
os.makedirs(root_dir, exist_ok=True)

session = SessionState.build(os.environ.get('QRDROP_FILE'), root_dir)
validate_session(session)

# Re-export the Flask app object for gunicorn
app = create_app(session)
