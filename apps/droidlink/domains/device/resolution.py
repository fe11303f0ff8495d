import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from infra.adb import AdbClient
from shared.errors import AdbError, ResolutionUnavailable

from ...constants import REFERENCE_HEIGHT, REFERENCE_WIDTH

logger = logging.getLogger("droidlink.device")

_SIZE_RE = re.compile(r"(Physical|Override) size:\s*(\d+)x(\d+)")


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int
    fallback: bool = False

    def __str__(self) -> str:
        return "{}x{}".format(self.width, self.height)


FALLBACK_RESOLUTION = Resolution(REFERENCE_WIDTH, REFERENCE_HEIGHT, fallback=True)


@dataclass(frozen=True)
class ResolutionScale:
    """Maps reference-space coordinates onto the device display."""

    width: int
    height: int
    reference_width: int = REFERENCE_WIDTH
    reference_height: int = REFERENCE_HEIGHT

    @classmethod
    def for_resolution(cls, resolution: Resolution) -> "ResolutionScale":
        return cls(width=resolution.width, height=resolution.height)

    @property
    def scale_x(self) -> float:
        return self.width / float(self.reference_width)

    @property
    def scale_y(self) -> float:
        return self.height / float(self.reference_height)

    @property
    def is_identity(self) -> bool:
        return (
            self.width == self.reference_width
            and self.height == self.reference_height
        )

    def apply(self, x: float, y: float) -> Tuple[int, int]:
        return (
            int(x * self.width / self.reference_width),
            int(y * self.height / self.reference_height),
        )


def parse_screen_size(output: str) -> Optional[Tuple[int, int]]:
    override = None
    physical = None
    for label, width, height in _SIZE_RE.findall(output or ""):
        if label == "Override":
            override = (int(width), int(height))
        elif physical is None:
            physical = (int(width), int(height))
    return override or physical


class ResolutionProbe:
    def __init__(self, adb: AdbClient, timeout: Optional[float] = None) -> None:
        self._adb = adb
        self._timeout = timeout

    def query(self) -> Resolution:
        try:
            output = self._adb.screen_size_output(timeout=self._timeout)
        except AdbError as exc:
            detail = exc.output or str(exc)
            raise ResolutionUnavailable(
                "wm size failed: {}".format(detail)
            ) from exc
        parsed = parse_screen_size(output)
        if not parsed:
            raise ResolutionUnavailable(
                "could not parse screen size: {!r}".format(output.strip())
            )
        width, height = parsed
        if width <= 0 or height <= 0:
            raise ResolutionUnavailable(
                "invalid screen size {}x{}".format(width, height)
            )
        return Resolution(width, height)

    def probe(self) -> Resolution:
        try:
            resolution = self.query()
        except ResolutionUnavailable as exc:
            logger.warning(
                "device resolution unavailable, using %s: %s",
                FALLBACK_RESOLUTION,
                exc,
            )
            return FALLBACK_RESOLUTION
        logger.info("device resolution %s", resolution)
        return resolution
