from .commands import (
    DEFAULT_SWIPE_MS,
    InputCommand,
    KeyEvent,
    Swipe,
    Tap,
    Text,
    decode_command,
    scale_command,
)
from .service import ControlChannel

__all__ = [
    "DEFAULT_SWIPE_MS",
    "ControlChannel",
    "InputCommand",
    "KeyEvent",
    "Swipe",
    "Tap",
    "Text",
    "decode_command",
    "scale_command",
]
