"""Run the fleet dashboard with the built-in Flask server."""

import signal
import sys

from dotenv import load_dotenv

# Config reads the environment at import time
load_dotenv()

from dashboard import create_app  # noqa: E402


def _handle_sigterm(signum, frame):
    # SystemExit lets the atexit hook flush the drive stats
    sys.exit(0)


app = create_app()


if __name__ == '__main__':
    signal.signal(signal.SIGTERM, _handle_sigterm)
    app.run(
        host=app.config['AUTORIP_WEB_HOST'],
        port=app.config['AUTORIP_WEB_PORT'],
        threaded=True,
    )
