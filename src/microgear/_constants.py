"""Internal constants for the NETPIE gateway and broker."""

from __future__ import annotations

from pathlib import Path

GEAR_API_ADDRESS = "ga.netpie.io"
GEAR_API_PORT = 8080
GEAR_API_SECURE_PORT = 8081

BROKER_PORT = 1883
BROKER_SECURE_PORT = 8883

# API revision sent with the request-token leg; doubles as the default verifier
MGREV = "NJS1b"

MAX_ALIAS_LENGTH = 16

MIN_TOKEN_DELAY_MS = 100
MAX_TOKEN_DELAY_MS = 30000

KEEPALIVE = 10  # seconds

CACHE_DIR = Path.home() / ".config" / "microgear"

HTTP_TIMEOUT = 15  # seconds
