import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3050))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{PORT}/ws")

# seconds to wait for an ack or a join outcome before giving up
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", 5))

ROOM_ID_PATTERN = r"^[A-Za-z0-9_-]{3,32}$"

DEFAULT_FRAME_RATE = int(os.getenv("DEFAULT_FRAME_RATE", 60))

# frame rate threshold -> max bitrate (bps), highest first
BITRATE_TIERS = (
    (120, 20_000_000),
    (90, 16_000_000),
)
DEFAULT_BITRATE = 12_000_000

ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478?transport=udp",
]
