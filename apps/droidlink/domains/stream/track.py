import asyncio
import fractions
import logging
import queue
import threading
from typing import List

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import Packet

from .framer import MediaFrame

logger = logging.getLogger("droidlink.relay")

VIDEO_CLOCK_RATE = 90000
VIDEO_TIME_BASE = fractions.Fraction(1, VIDEO_CLOCK_RATE)

_STOP = object()


class H264SampleTrack(MediaStreamTrack):
    """
    Video sink fed with already encoded NAL units.

    ``write`` is called from the relay thread; aiortc pulls packets through
    ``recv`` on the event loop. Parameter sets and other non-VCL units are
    held back and sent in the same packet as the next picture.
    """

    kind = "video"

    def __init__(self, queue_size: int = 256, put_timeout: float = 0.25) -> None:
        super().__init__()
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(1, queue_size))
        self._put_timeout = put_timeout
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._pending: List[bytes] = []
        self._pts = 0
        self._elapsed = 0.0
        self.packets_written = 0

    @property
    def available(self) -> bool:
        return not self._closed.is_set() and self.readyState == "live"

    def write(self, frame: MediaFrame) -> bool:
        if not self.available:
            return False
        with self._lock:
            packet = self._build_packet(frame)
        if packet is None:
            return True
        while self.available:
            try:
                self._queue.put(packet, timeout=self._put_timeout)
            except queue.Full:
                continue
            if self._closed.is_set():
                return False
            self.packets_written += 1
            return True
        return False

    def _build_packet(self, frame: MediaFrame):
        self._elapsed += max(0.0, frame.duration)
        if not frame.is_vcl:
            self._pending.append(frame.annexb())
            return None
        payload = b"".join(self._pending) + frame.annexb()
        self._pending = []
        packet = Packet(payload)
        packet.pts = self._pts
        packet.dts = self._pts
        packet.time_base = VIDEO_TIME_BASE
        self._pts = max(self._pts + 1, int(round(self._elapsed * VIDEO_CLOCK_RATE)))
        return packet

    async def recv(self) -> Packet:
        if self._closed.is_set():
            raise MediaStreamError
        item = await asyncio.to_thread(self._queue.get)
        if item is _STOP:
            raise MediaStreamError
        return item

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def stop(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # A writer may slip one more packet in while draining.
        while True:
            self._drain()
            try:
                self._queue.put_nowait(_STOP)
            except queue.Full:
                continue
            break
        logger.debug("video sink closed after %d packets", self.packets_written)
        super().stop()
