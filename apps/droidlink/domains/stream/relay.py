import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .capture import CaptureCommand
from .framer import DEFAULT_CHUNK_SIZE, MediaFrame, NalFramer

logger = logging.getLogger("droidlink.relay")

MIN_FRAME_DURATION = 0.001
PROGRESS_EVERY = 100


@dataclass
class RelayResult:
    frames: int
    reason: str
    returncode: Optional[int] = None
    error: Optional[str] = None


class FramePacer:
    """
    Assigns presentation durations.

    ``asap`` forwards every unit immediately with a fixed minimal duration;
    ``paced`` releases one picture per tick of the target frame rate.
    """

    def __init__(self, mode: str, fps: int, stop_event: threading.Event) -> None:
        self.mode = mode
        self.interval = 1.0 / max(1, fps)
        self._stop_event = stop_event
        self._next_tick: Optional[float] = None

    def next_duration(self, frame: MediaFrame) -> float:
        if self.mode != "paced":
            return MIN_FRAME_DURATION
        if not frame.is_vcl:
            return 0.0
        now = time.monotonic()
        if self._next_tick is None:
            self._next_tick = now
        delay = self._next_tick - now
        if delay > 0:
            self._stop_event.wait(delay)
        else:
            # Fell behind; restart the ticker instead of bursting.
            self._next_tick = now
        self._next_tick += self.interval
        return self.interval


def _log_stderr(name: str, stream) -> None:
    try:
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                logger.debug("[%s] %s", name, line)
    except (OSError, ValueError):
        pass
    finally:
        stream.close()


def _terminate_process(process: Optional[subprocess.Popen], timeout: float) -> None:
    if not process:
        return
    if process.poll() is None:
        try:
            process.kill()
        except OSError:
            pass
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.error("capture process %s did not exit after kill", process.pid)
    if process.stdout:
        process.stdout.close()


class MediaRelay:
    """
    Pumps one capture process into a video sink.

    At most one run is active at a time. The capture process is killed and
    reaped on every exit path of a run; a crashed process is never restarted
    here.
    """

    def __init__(
        self,
        command: CaptureCommand,
        *,
        kill_timeout: float = 5.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.command = command
        self._kill_timeout = kill_timeout
        self._chunk_size = chunk_size
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._process: Optional[subprocess.Popen] = None
        self._running = False
        self.runs = 0
        self.last_result: Optional[RelayResult] = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._running

    def start(self, sink) -> bool:
        with self._lock:
            if self._running:
                logger.warning("relay already running; ignoring start")
                return False
            self._running = True
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_thread,
                args=(sink,),
                name="relay-{}".format(self.command.name),
                daemon=True,
            )
            thread = self._thread
        thread.start()
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        with self._lock:
            process = self._process
            thread = self._thread
        if process is not None and process.poll() is None:
            try:
                process.kill()
            except OSError:
                pass
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run_thread(self, sink) -> None:
        try:
            self.run(sink)
        finally:
            with self._lock:
                self._running = False

    def _spawn(self) -> subprocess.Popen:
        process = subprocess.Popen(
            list(self.command.argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        threading.Thread(
            target=_log_stderr,
            args=(self.command.name, process.stderr),
            daemon=True,
        ).start()
        return process

    def run(self, sink) -> RelayResult:
        self.runs += 1
        logger.info("relay start %s: %s", self.command.name, self.command.describe())
        try:
            process = self._spawn()
        except OSError as exc:
            logger.error("capture process failed to start: %s", exc)
            result = RelayResult(frames=0, reason="spawn_failed", error=str(exc))
            self.last_result = result
            return result
        with self._lock:
            self._process = process
        if self._stop_event.is_set():
            # stop() raced the spawn and never saw this process.
            process.kill()
        pacer = FramePacer(self.command.pacing, self.command.fps, self._stop_event)
        framer = NalFramer(process.stdout, chunk_size=self._chunk_size)
        frames = 0
        reason = "eof"
        try:
            for frame in framer:
                if self._stop_event.is_set():
                    reason = "stopped"
                    break
                if not sink.available:
                    reason = "sink_closed"
                    break
                frame = frame.with_duration(pacer.next_duration(frame))
                if self._stop_event.is_set():
                    reason = "stopped"
                    break
                if not sink.write(frame):
                    reason = "sink_closed"
                    break
                frames += 1
                if frames % PROGRESS_EVERY == 0:
                    logger.info("relay %s: %d frames sent", self.command.name, frames)
            else:
                if self._stop_event.is_set():
                    reason = "stopped"
                elif framer.error:
                    reason = "framing_error"
        finally:
            with self._lock:
                self._process = None
            _terminate_process(process, self._kill_timeout)
        result = RelayResult(
            frames=frames,
            reason=reason,
            returncode=process.returncode,
            error=framer.error,
        )
        self.last_result = result
        logger.info(
            "relay end %s: %d frames, reason=%s, exit=%s",
            self.command.name,
            frames,
            reason,
            process.returncode,
        )
        return result
