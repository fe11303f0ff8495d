import os
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    CAPTURE_SOURCES,
    DEFAULT_ICE_URLS,
    PACING_MODES,
    ROOT_DIR,
    TOOLS_DIR,
)

ENV_FILES = (ROOT_DIR / ".env", ROOT_DIR / ".env.example")


def _resolve_adb_path(configured: Optional[str]) -> str:
    if configured:
        return configured
    adb_name = "adb.exe" if os.name == "nt" else "adb"
    bundled = TOOLS_DIR / "platform-tools" / adb_name
    if bundled.exists():
        return str(bundled)
    return "adb"


def _resolve_ffmpeg_path(configured: Optional[str]) -> str:
    if configured:
        return configured
    ffmpeg_name = "ffmpeg.exe" if os.name == "nt" else "ffmpeg"
    bundled_root = TOOLS_DIR / "ffmpeg"
    direct = bundled_root / ffmpeg_name
    if direct.exists():
        return str(direct)
    bin_path = bundled_root / "bin" / ffmpeg_name
    if bin_path.exists():
        return str(bin_path)
    for candidate in bundled_root.glob("*/bin/{}".format(ffmpeg_name)):
        if candidate.exists():
            return str(candidate)
    return "ffmpeg"


class ServerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=[str(path) for path in ENV_FILES],
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    adb_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DROIDLINK_ADB_PATH", "ADB_PATH"),
    )
    device_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DROIDLINK_DEVICE_ID", "DEVICE_ID"),
    )
    adb_timeout: float = Field(
        default=10.0, validation_alias="DROIDLINK_ADB_TIMEOUT"
    )
    ffmpeg_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DROIDLINK_FFMPEG_PATH", "FFMPEG_PATH"),
    )

    capture_source: str = Field(
        default="screenrecord", validation_alias="DROIDLINK_CAPTURE_SOURCE"
    )
    capture_asset: str = Field(
        default="assets/test_video.mp4",
        validation_alias="DROIDLINK_CAPTURE_ASSET",
    )
    stream_bitrate: int = Field(
        default=8_000_000, validation_alias="DROIDLINK_STREAM_BITRATE"
    )
    stream_size: str = Field(default="", validation_alias="DROIDLINK_STREAM_SIZE")
    stream_time_limit: int = Field(
        default=0, validation_alias="DROIDLINK_STREAM_TIME_LIMIT"
    )
    stream_fps: int = Field(default=20, validation_alias="DROIDLINK_STREAM_FPS")
    stream_pacing: str = Field(
        default="asap", validation_alias="DROIDLINK_STREAM_PACING"
    )

    webrtc_ice: str = Field(
        default=",".join(DEFAULT_ICE_URLS), validation_alias="DROIDLINK_WEBRTC_ICE"
    )
    ice_gathering_timeout: float = Field(
        default=15.0, validation_alias="DROIDLINK_ICE_GATHERING_TIMEOUT"
    )
    relay_kill_timeout: float = Field(
        default=5.0, validation_alias="DROIDLINK_RELAY_KILL_TIMEOUT"
    )
    log_level: str = Field(default="info", validation_alias="DROIDLINK_LOG_LEVEL")

    @field_validator(
        "adb_path",
        "device_id",
        "ffmpeg_path",
        "capture_asset",
        "stream_size",
        "webrtc_ice",
        mode="before",
    )
    @classmethod
    def _strip_optional(cls, value):
        if value is None:
            return None
        return str(value).strip()

    @field_validator("capture_source", "stream_pacing", "log_level", mode="before")
    @classmethod
    def _strip_lower(cls, value):
        if value is None:
            return ""
        return str(value).strip().lower()

    @field_validator("capture_source")
    @classmethod
    def _check_source(cls, value):
        if value not in CAPTURE_SOURCES:
            raise ValueError(
                "capture source must be one of {}".format(", ".join(CAPTURE_SOURCES))
            )
        return value

    @field_validator("stream_pacing")
    @classmethod
    def _check_pacing(cls, value):
        if value not in PACING_MODES:
            raise ValueError(
                "stream pacing must be one of {}".format(", ".join(PACING_MODES))
            )
        return value

    @field_validator("stream_fps")
    @classmethod
    def _check_fps(cls, value):
        if value <= 0:
            raise ValueError("stream fps must be positive")
        return value

    @property
    def resolved_adb_path(self) -> str:
        return _resolve_adb_path(self.adb_path)

    @property
    def resolved_ffmpeg_path(self) -> str:
        return _resolve_ffmpeg_path(self.ffmpeg_path)

    @property
    def asset_path(self) -> Path:
        path = Path(self.capture_asset)
        if not path.is_absolute():
            path = ROOT_DIR / path
        return path

    @property
    def webrtc_ice_urls(self) -> List[str]:
        if not self.webrtc_ice:
            return []
        return [item.strip() for item in self.webrtc_ice.split(",") if item.strip()]
