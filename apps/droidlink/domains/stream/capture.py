from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from infra.adb import AdbClient

from ...settings import ServerSettings


@dataclass(frozen=True)
class CaptureCommand:
    """Describes the external process that produces a raw H.264 stream."""

    name: str
    argv: Tuple[str, ...]
    pacing: str = "asap"
    fps: int = 30

    @classmethod
    def from_argv(
        cls, name: str, argv: Sequence[str], pacing: str = "asap", fps: int = 30
    ) -> "CaptureCommand":
        return cls(
            name=name,
            argv=tuple(str(item) for item in argv),
            pacing=pacing,
            fps=fps,
        )

    def describe(self) -> str:
        return " ".join(self.argv)


def _parse_size(value: Optional[str]) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    parts = value.lower().split("x")
    if len(parts) != 2:
        raise ValueError("invalid stream size: {}".format(value))
    width, height = int(parts[0]), int(parts[1])
    if width <= 0 or height <= 0:
        raise ValueError("invalid stream size: {}".format(value))
    return width, height


def _even(value: int) -> int:
    return max(2, value - (value % 2))


def screenrecord_argv(
    adb: AdbClient,
    bitrate: int,
    size: Optional[Tuple[int, int]] = None,
    time_limit: int = 0,
) -> List[str]:
    args = ["screenrecord", "--output-format=h264", "--bit-rate", str(bitrate)]
    if size:
        args += ["--size", "{}x{}".format(*size)]
    if time_limit > 0:
        args += ["--time-limit", str(time_limit)]
    args.append("-")
    return adb.exec_out_cmd(args)


def asset_argv(
    ffmpeg_path: str,
    asset: Path,
    fps: int,
    size: Optional[Tuple[int, int]] = None,
) -> List[str]:
    filters = ["fps={}".format(fps)]
    if size:
        filters.append("scale={}:{}".format(_even(size[0]), _even(size[1])))
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-stream_loop",
        "-1",
        "-re",
        "-i",
        str(asset),
        "-vf",
        ",".join(filters),
        "-c:v",
        "libx264",
        "-preset",
        "superfast",
        "-tune",
        "zerolatency",
        "-profile:v",
        "baseline",
        "-pix_fmt",
        "yuv420p",
        "-g",
        str(max(1, fps * 3)),
        "-an",
        "-bsf:v",
        "h264_mp4toannexb",
        "-f",
        "h264",
        "pipe:1",
    ]


def testsrc_argv(
    ffmpeg_path: str, fps: int, size: Optional[Tuple[int, int]] = None
) -> List[str]:
    width, height = size or (360, 640)
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-re",
        "-f",
        "lavfi",
        "-i",
        "testsrc=size={}x{}:rate={}".format(_even(width), _even(height), fps),
        "-pix_fmt",
        "yuv420p",
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-tune",
        "zerolatency",
        "-profile:v",
        "baseline",
        "-g",
        str(max(1, fps * 3)),
        "-f",
        "h264",
        "pipe:1",
    ]


def build_capture_command(
    settings: ServerSettings, adb: Optional[AdbClient] = None
) -> CaptureCommand:
    size = _parse_size(settings.stream_size)
    source = settings.capture_source
    if source == "screenrecord":
        adb = adb or AdbClient(
            adb_path=settings.resolved_adb_path, device_id=settings.device_id
        )
        argv = screenrecord_argv(
            adb,
            settings.stream_bitrate,
            size=size,
            time_limit=settings.stream_time_limit,
        )
    elif source == "asset":
        argv = asset_argv(
            settings.resolved_ffmpeg_path,
            settings.asset_path,
            settings.stream_fps,
            size=size,
        )
    elif source == "testsrc":
        argv = testsrc_argv(
            settings.resolved_ffmpeg_path, settings.stream_fps, size=size
        )
    else:
        raise ValueError("unknown capture source: {}".format(source))
    return CaptureCommand.from_argv(
        source, argv, pacing=settings.stream_pacing, fps=settings.stream_fps
    )
