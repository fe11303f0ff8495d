import logging
import queue
import threading
import time
from typing import Callable, Optional, Union

from infra.adb import AdbClient
from shared.errors import AdbError, ClientInputError

from ...constants import CONTROL_MAX_PENDING
from ..device import ResolutionScale
from .commands import (
    InputCommand,
    KeyEvent,
    Swipe,
    Tap,
    Text,
    decode_command,
    scale_command,
)

logger = logging.getLogger("droidlink.control")

_STOP = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


class ControlChannel:
    """
    Turns data channel messages into device input.

    Ingestion only decodes and enqueues; a single worker thread executes the
    queued commands in arrival order. At most ``max_pending`` commands wait
    behind the one being executed; anything arriving past that is dropped.
    """

    def __init__(
        self,
        adb: AdbClient,
        scale: ResolutionScale,
        *,
        clock: Callable[[], int] = _now_ms,
        max_pending: int = CONTROL_MAX_PENDING,
    ) -> None:
        self._adb = adb
        self._scale = scale
        self._clock = clock
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(1, max_pending))
        self._stop_event = threading.Event()
        self._worker = threading.Thread(
            target=self._run, name="control-worker", daemon=True
        )
        self._channel = None
        self.received = 0
        self.dropped = 0
        self.executed = 0
        self.failed = 0
        self._worker.start()

    @property
    def scale(self) -> ResolutionScale:
        return self._scale

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()

    def attach(self, channel) -> None:
        """Bind an aiortc ``RTCDataChannel``."""
        self._channel = channel
        label = getattr(channel, "label", "?")
        logger.info("data channel received: %s", label)

        @channel.on("open")
        def on_open() -> None:
            logger.info("data channel %s open", label)

        @channel.on("close")
        def on_close() -> None:
            logger.info("data channel %s closed", label)

        @channel.on("error")
        def on_error(exc) -> None:
            logger.warning("data channel %s error: %s", label, exc)

        @channel.on("message")
        def on_message(message) -> None:
            self.on_message(message)

    def on_message(self, raw: Union[str, bytes]) -> Optional[InputCommand]:
        received_at = self._clock()
        self.received += 1
        if self.closed:
            self.dropped += 1
            return None
        try:
            command = decode_command(raw)
        except ClientInputError as exc:
            self.dropped += 1
            logger.warning("dropping control message: %s", exc)
            return None
        if command.timestamp is not None:
            logger.info(
                "input %s received, latency %d ms",
                command.kind,
                received_at - command.timestamp,
            )
        else:
            logger.info("input %s received, latency unknown", command.kind)
        try:
            self._queue.put_nowait(command)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "control queue full (%d pending), dropping %s; %d dropped so far",
                self._queue.qsize(),
                command.kind,
                self.dropped,
            )
            return None
        return command

    def execute(self, command: InputCommand) -> bool:
        scaled = scale_command(command, self._scale)
        started = time.monotonic()
        try:
            result = self._dispatch(scaled, command)
        except AdbError as exc:
            self.failed += 1
            logger.error(
                "input %s failed: %s; output: %s",
                command.kind,
                exc,
                exc.output or "<none>",
            )
            return False
        elapsed_ms = (time.monotonic() - started) * 1000.0
        self.executed += 1
        output = (getattr(result, "stdout", "") or "").strip()
        if output:
            logger.debug("input %s output: %s", command.kind, output)
        logger.info("input %s executed in %.0f ms", command.kind, elapsed_ms)
        return True

    def _dispatch(self, scaled: InputCommand, original: InputCommand):
        if isinstance(scaled, Tap):
            logger.debug(
                "input tap %d %d (from %s %s)",
                scaled.x,
                scaled.y,
                original.x,
                original.y,
            )
            return self._adb.tap(scaled.x, scaled.y)
        if isinstance(scaled, Swipe):
            duration = scaled.effective_duration_ms
            logger.debug(
                "input swipe %d %d %d %d %d",
                scaled.x1,
                scaled.y1,
                scaled.x2,
                scaled.y2,
                duration,
            )
            return self._adb.swipe(
                scaled.x1, scaled.y1, scaled.x2, scaled.y2, duration_ms=duration
            )
        if isinstance(scaled, KeyEvent):
            logger.debug("input keyevent %s", scaled.keycode)
            return self._adb.keyevent(scaled.keycode)
        if isinstance(scaled, Text):
            logger.debug("input text %r", scaled.content)
            return self._adb.input_text(scaled.content)
        raise ValueError("unknown input command: {!r}".format(scaled))

    def _discard_pending(self) -> int:
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return discarded
            self._queue.task_done()
            discarded += 1

    def close(self, timeout: float = 2.0) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        # The worker may be stuck in a device call, so make room for the
        # sentinel instead of blocking on a full queue.
        while True:
            discarded = self._discard_pending()
            if discarded:
                logger.info("discarded %d pending input commands", discarded)
            try:
                self._queue.put_nowait(_STOP)
                break
            except queue.Full:
                continue
        if self._worker is not threading.current_thread():
            self._worker.join(timeout=timeout)
        self._channel = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if self._stop_event.is_set():
                    continue
                self.execute(item)
            except Exception:
                logger.exception("control worker error")
            finally:
                self._queue.task_done()
