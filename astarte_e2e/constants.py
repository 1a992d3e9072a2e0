"""Constants used across the astarte-e2e package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "astarte-e2e"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.cwd() / DEFAULT_CONFIG_FILENAME

DEFAULT_APPENGINE_URL = "http://api.astarte.localhost/appengine/"
DEFAULT_PAIRING_URL = "http://api.astarte.localhost/pairing/"
DEFAULT_REALM = "test"

DEFAULT_BROKER_PORT = 8883

# Phoenix channel protocol
PHOENIX_VSN = "2.0.0"
PHOENIX_TOPIC = "phoenix"
DEFAULT_REPLY_TIMEOUT_SECONDS = 2.0
DEFAULT_QUEUE_SIZE = 20
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30.0

DEFAULT_CHECK_INTERVAL_SECONDS = 60.0
DEFAULT_RETRY_INTERVAL_SECONDS = 1.0
DEFAULT_CONVERGENCE_ATTEMPTS = 20

INTERFACE_PREFIX = "org.astarte-platform.e2e"
