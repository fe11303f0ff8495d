"""
Annex-B H.264 framing.

``NalFramer`` turns an arbitrary byte stream (normally the stdout pipe of a
capture process) into complete NAL units. Units are only emitted once the
start code that follows them has been seen, so the output does not depend on
how the underlying reads happen to be chunked.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterator, Optional

logger = logging.getLogger("droidlink.relay")

START_CODE = b"\x00\x00\x01"
ANNEXB_PREFIX = b"\x00\x00\x00\x01"

NAL_SLICE = 1
NAL_IDR = 5
NAL_SEI = 6
NAL_SPS = 7
NAL_PPS = 8
NAL_AUD = 9

DEFAULT_CHUNK_SIZE = 4096
DEFAULT_MAX_UNIT_SIZE = 4 * 1024 * 1024


class FramingError(ValueError):
    pass


@dataclass(frozen=True)
class MediaFrame:
    """One NAL unit without its start code, plus a presentation duration."""

    data: bytes
    duration: float = 0.0

    @property
    def nal_type(self) -> int:
        return self.data[0] & 0x1F

    @property
    def is_vcl(self) -> bool:
        return NAL_SLICE <= self.nal_type <= NAL_IDR

    @property
    def is_keyframe(self) -> bool:
        return self.nal_type == NAL_IDR

    def annexb(self) -> bytes:
        return ANNEXB_PREFIX + self.data

    def with_duration(self, duration: float) -> "MediaFrame":
        return replace(self, duration=duration)


def _check_unit(unit: bytes) -> None:
    if unit[0] & 0x80:
        raise FramingError(
            "forbidden_zero_bit set in NAL header 0x{:02x}".format(unit[0])
        )


class NalFramer:
    """Single-use iterator of ``MediaFrame`` over a readable binary stream."""

    def __init__(
        self,
        stream,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_unit_size: int = DEFAULT_MAX_UNIT_SIZE,
    ) -> None:
        self._stream = stream
        self._chunk_size = max(1, chunk_size)
        self._max_unit_size = max_unit_size
        self._consumed = False
        self.bytes_read = 0
        self.frames_emitted = 0
        self.error: Optional[str] = None

    def __iter__(self) -> Iterator[MediaFrame]:
        if self._consumed:
            raise RuntimeError("NalFramer is single-use; create one per stream")
        self._consumed = True
        return self._frames()

    def _read(self) -> Optional[bytes]:
        try:
            return self._stream.read(self._chunk_size)
        except (OSError, ValueError) as exc:
            self.error = "read error: {}".format(exc)
            logger.warning("capture stream %s", self.error)
            return None

    def _fail(self, message: str) -> None:
        self.error = message
        logger.warning("capture stream framing error: %s", message)

    def _no_sync_message(self) -> str:
        return "no start code in first {} bytes".format(self._max_unit_size)

    def _accept(self, unit: bytes) -> bool:
        if len(unit) > self._max_unit_size:
            self._fail("NAL unit exceeds {} bytes".format(self._max_unit_size))
            return False
        try:
            _check_unit(unit)
        except FramingError as exc:
            self._fail(str(exc))
            return False
        return True

    def _overgrown(self, buffer: bytearray, synced: bool) -> bool:
        """
        Stop an unfinished unit or prefix as soon as it is certain to exceed
        the limit, so the outcome does not depend on read sizes.
        """
        if not synced:
            # The last two bytes may still open a start code.
            if len(buffer) - 2 > self._max_unit_size:
                self._fail(self._no_sync_message())
                return True
            return False
        if len(buffer) <= self._max_unit_size:
            return False
        # Trailing zeros are stripped from a finished unit.
        if len(buffer.rstrip(b"\x00")) > self._max_unit_size:
            self._fail("NAL unit exceeds {} bytes".format(self._max_unit_size))
            return True
        return False

    def _frames(self) -> Iterator[MediaFrame]:
        buffer = bytearray()
        scan = 0
        synced = False
        while True:
            chunk = self._read()
            if chunk is None:
                # Tail may be a partial unit after a failed read.
                return
            if not chunk:
                break
            self.bytes_read += len(chunk)
            buffer.extend(chunk)
            while True:
                index = buffer.find(START_CODE, scan)
                if index < 0:
                    # Keep the last two bytes searchable for a split start code.
                    scan = max(0, len(buffer) - 2)
                    break
                if not synced:
                    if index > self._max_unit_size:
                        self._fail(self._no_sync_message())
                        return
                    del buffer[: index + len(START_CODE)]
                    synced = True
                    scan = 0
                    continue
                unit = bytes(buffer[:index]).rstrip(b"\x00")
                del buffer[: index + len(START_CODE)]
                scan = 0
                if not unit:
                    continue
                if not self._accept(unit):
                    return
                self.frames_emitted += 1
                yield MediaFrame(unit)
            if self._overgrown(buffer, synced):
                return
        if not synced:
            return
        unit = bytes(buffer).rstrip(b"\x00")
        if not unit or not self._accept(unit):
            return
        self.frames_emitted += 1
        yield MediaFrame(unit)
