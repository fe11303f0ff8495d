import json
from dataclasses import dataclass, replace
from typing import Optional, Union

from pydantic import ValidationError

from shared.errors import ClientInputError

from ...api.schemas import ControlMessage
from ..device import ResolutionScale

DEFAULT_SWIPE_MS = 300


@dataclass(frozen=True)
class Tap:
    x: float
    y: float
    timestamp: Optional[int] = None
    kind = "tap"


@dataclass(frozen=True)
class Swipe:
    x1: float
    y1: float
    x2: float
    y2: float
    duration_ms: Optional[int] = None
    timestamp: Optional[int] = None
    kind = "swipe"

    @property
    def effective_duration_ms(self) -> int:
        return self.duration_ms or DEFAULT_SWIPE_MS


@dataclass(frozen=True)
class KeyEvent:
    keycode: str
    timestamp: Optional[int] = None
    kind = "keyevent"


@dataclass(frozen=True)
class Text:
    content: str
    timestamp: Optional[int] = None
    kind = "text"


InputCommand = Union[Tap, Swipe, KeyEvent, Text]


def command_from_message(message: ControlMessage) -> InputCommand:
    if message.type == "tap":
        return Tap(message.x, message.y, timestamp=message.timestamp)
    if message.type == "swipe":
        return Swipe(
            message.x,
            message.y,
            message.x2,
            message.y2,
            duration_ms=message.duration,
            timestamp=message.timestamp,
        )
    if message.type == "keyevent":
        return KeyEvent(message.keycode.strip(), timestamp=message.timestamp)
    return Text(message.text, timestamp=message.timestamp)


def decode_command(raw: Union[str, bytes]) -> InputCommand:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ClientInputError("control message is not utf-8") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ClientInputError("invalid control message json: {}".format(exc)) from exc
    if not isinstance(payload, dict):
        raise ClientInputError("control message must be a json object")
    try:
        message = ControlMessage.model_validate(payload)
    except ValidationError as exc:
        errors = "; ".join(error["msg"] for error in exc.errors())
        raise ClientInputError("invalid control message: {}".format(errors)) from exc
    return command_from_message(message)


def scale_command(command: InputCommand, scale: ResolutionScale) -> InputCommand:
    """Return a device-space copy; the wire-space command is left untouched."""
    if isinstance(command, Tap):
        x, y = scale.apply(command.x, command.y)
        return replace(command, x=x, y=y)
    if isinstance(command, Swipe):
        x1, y1 = scale.apply(command.x1, command.y1)
        x2, y2 = scale.apply(command.x2, command.y2)
        return replace(command, x1=x1, y1=y1, x2=x2, y2=y2)
    return command
