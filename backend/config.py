"""Application-wide configuration constants."""

import os
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PEERDROP_{name}", default)


# --- Identity ---
APP_ID = "peerdrop-v1"
SHARE_CODE_LENGTH = 10

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# --- API ---
API_HOST = _env("API_HOST", "127.0.0.1")
API_PORT = int(_env("API_PORT", "8765"))
# Comma-separated origins allowed to call the API from a browser
CORS_ORIGINS = [
    o.strip()
    for o in _env("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]

# --- Direct TCP transport ---
TRANSFER_PORT_MIN = int(_env("PORT_MIN", "50000"))
TRANSFER_PORT_MAX = int(_env("PORT_MAX", "65000"))
CONNECT_TIMEOUT = float(_env("CONNECT_TIMEOUT", "10"))  # seconds
HELLO_TIMEOUT = 10.0  # seconds to wait for the responder's HELLO frame
# Comma-separated hosts advertised as candidates; empty means auto-detect
ADVERTISE_HOSTS = [
    h.strip() for h in _env("ADVERTISE_HOSTS", "").split(",") if h.strip()
]

# --- Transfer ---
CHUNK_SIZE = int(_env("CHUNK_SIZE", str(64 * 1024)))  # 64 KB
MIN_CHUNK_SIZE = 1024
MAX_CHUNK_SIZE = 256 * 1024
TRANSFER_TIMEOUT = float(_env("TRANSFER_TIMEOUT", "120"))  # seconds
ACCEPT_TIMEOUT = float(_env("ACCEPT_TIMEOUT", "60"))  # seconds
PROGRESS_INTERVAL = 0.2  # seconds between progress events
PROGRESS_WINDOW = 5  # samples kept by the speed estimator

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "PeerDrop")
)
