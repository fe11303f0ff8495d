from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
TOOLS_DIR = ROOT_DIR / "tools"

# Coordinate space the browser client reports input events in.
REFERENCE_WIDTH = 1080
REFERENCE_HEIGHT = 1920

DEFAULT_ICE_URLS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)

CAPTURE_SOURCES = ("screenrecord", "asset", "testsrc")
PACING_MODES = ("asap", "paced")

# Input commands waiting behind a slow device before new ones are dropped.
CONTROL_MAX_PENDING = 64
