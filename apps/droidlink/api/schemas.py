from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SessionDescription(BaseModel):
    sdp: str
    type: str = Field(min_length=1)

    model_config = ConfigDict(extra="ignore")


class ConfigResponse(BaseModel):
    ice_servers: List[str]
    reference_width: int
    reference_height: int
    capture_source: str


class ControlMessage(BaseModel):
    type: str = Field(min_length=1)
    x: Optional[float] = None
    y: Optional[float] = None
    x2: Optional[float] = None
    y2: Optional[float] = None
    duration: Optional[int] = None
    keycode: Optional[str] = None
    text: Optional[str] = None
    timestamp: Optional[int] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("keycode", mode="before")
    @classmethod
    def _keycode_as_text(cls, value: Union[str, int, None]):
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, int):
            return str(value)
        return value

    @model_validator(mode="after")
    def _validate(self):
        command_type = self.type
        if command_type == "tap":
            if self.x is None or self.y is None:
                raise ValueError("tap requires x and y")
            return self
        if command_type == "swipe":
            if None in (self.x, self.y, self.x2, self.y2):
                raise ValueError("swipe requires x, y, x2, y2")
            if self.duration is not None and self.duration < 0:
                raise ValueError("swipe duration must not be negative")
            return self
        if command_type == "keyevent":
            if not self.keycode or not self.keycode.strip():
                raise ValueError("keyevent requires keycode")
            return self
        if command_type == "text":
            if not self.text:
                raise ValueError("text requires text")
            return self
        raise ValueError("unsupported input type: {}".format(command_type))
