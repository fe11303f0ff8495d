"""Shared fakes for the device shell, video sink and peer connection."""

from __future__ import annotations

import asyncio
import subprocess
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from droidlink.domains.device import Resolution
from shared.errors import AdbError

SPS = b"\x67\x42\xc0\x1f\xda\x01\x40\x16\xe8"
PPS = b"\x68\xce\x3c\x80"
IDR = b"\x65\x88\x84\x00\x33\xff"
SLICE = b"\x41\x9a\x02\x10\x4f"

OFFER_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 1 1 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "m=video 9 UDP/TLS/RTP/SAVPF 96 97",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=recvonly",
        "a=rtpmap:96 VP8/90000",
        "a=rtpmap:97 H264/90000",
        "a=fmtp:97 packetization-mode=1;profile-level-id=42e01f",
        "",
    ]
)

VP8_ONLY_SDP = OFFER_SDP.replace("a=rtpmap:97 H264/90000\r\n", "").replace(
    "a=fmtp:97 packetization-mode=1;profile-level-id=42e01f\r\n", ""
)

CONTROL_ONLY_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 3 3 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=sctp-port:5000",
        "",
    ]
)

ANSWER_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 2 2 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=video 9 UDP/TLS/RTP/SAVPF 97",
        "a=mid:0",
        "a=sendonly",
        "a=rtpmap:97 H264/90000",
        "a=candidate:1 1 udp 2130706431 192.168.1.20 50000 typ host",
        "a=candidate:2 1 udp 1694498815 203.0.113.5 50000 typ srflx",
        "a=end-of-candidates",
        "",
    ]
)


def annexb(*units: bytes, long_codes: bool = False) -> bytes:
    prefix = b"\x00\x00\x00\x01" if long_codes else b"\x00\x00\x01"
    return b"".join(prefix + unit for unit in units)


class FakeAdb:
    """Records input commands instead of calling a device."""

    def __init__(self, size_output: str = "Physical size: 1080x1920\n") -> None:
        self.size_output = size_output
        self.calls: List[tuple] = []
        self.failures: Dict[str, AdbError] = {}

    def _record(self, name: str, *args):
        self.calls.append((name,) + args)
        error = self.failures.get(name)
        if error is not None:
            raise error
        return subprocess.CompletedProcess(args=[name], returncode=0, stdout="")

    def screen_size_output(self, timeout=None):
        error = self.failures.get("wm")
        if error is not None:
            raise error
        return self.size_output

    def tap(self, x, y):
        return self._record("tap", x, y)

    def swipe(self, x1, y1, x2, y2, duration_ms=300):
        return self._record("swipe", x1, y1, x2, y2, duration_ms)

    def keyevent(self, keycode):
        return self._record("keyevent", keycode)

    def input_text(self, text):
        return self._record("text", text)


class FakeSink:
    def __init__(self, capacity: Optional[int] = None) -> None:
        self.frames = []
        self.capacity = capacity
        self.closed = False

    @property
    def available(self) -> bool:
        if self.closed:
            return False
        return self.capacity is None or len(self.frames) < self.capacity

    def write(self, frame) -> bool:
        if not self.available:
            return False
        self.frames.append(frame)
        return True


class FakeChannel:
    def __init__(self, label: str = "control") -> None:
        self.label = label
        self.handlers: Dict[str, list] = {}

    def on(self, event, handler=None):
        def register(fn):
            self.handlers.setdefault(event, []).append(fn)
            return fn

        return register(handler) if handler else register

    def emit(self, event, *args) -> None:
        for handler in self.handlers.get(event, []):
            handler(*args)


class FakeTransceiver:
    def __init__(self, sender) -> None:
        self.sender = sender
        self.preferences = None

    def setCodecPreferences(self, codecs) -> None:
        self.preferences = list(codecs)


class FakePeerConnection:
    """Enough of ``RTCPeerConnection`` to drive a session."""

    def __init__(self, configuration=None, fail_on=None, gather=True) -> None:
        self.configuration = configuration
        self.fail_on = fail_on
        self.gather = gather
        self.handlers: Dict[str, list] = {}
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.transceivers: List[FakeTransceiver] = []
        self.closed = False

    def on(self, event, handler=None):
        def register(fn):
            self.handlers.setdefault(event, []).append(fn)
            return fn

        return register(handler) if handler else register

    async def emit(self, event, *args) -> None:
        for handler in list(self.handlers.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result

    async def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        await self.emit("connectionstatechange")

    def addTrack(self, track):
        sender = SimpleNamespace(track=track)
        self.transceivers.append(FakeTransceiver(sender))
        return sender

    def getTransceivers(self):
        return list(self.transceivers)

    async def setRemoteDescription(self, description) -> None:
        if self.fail_on == "remote":
            raise ValueError("remote description rejected")
        self.remoteDescription = description

    async def createAnswer(self):
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description
        self.iceGatheringState = "gathering"
        if self.gather:
            asyncio.get_running_loop().call_soon(self._complete_gathering)

    def _complete_gathering(self) -> None:
        self.iceGatheringState = "complete"
        for handler in list(self.handlers.get("icegatheringstatechange", [])):
            handler()

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"


class FakeRelay:
    def __init__(self, command) -> None:
        self.command = command
        self.starts = 0
        self.stops = 0
        self.sink = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self, sink) -> bool:
        if self._active:
            return False
        self._active = True
        self.starts += 1
        self.sink = sink
        return True

    def stop(self, timeout=None) -> None:
        self.stops += 1
        self._active = False


class FakeProbe:
    def __init__(self, resolution: Resolution) -> None:
        self.resolution = resolution
        self.calls = 0

    def probe(self) -> Resolution:
        self.calls += 1
        return self.resolution


@pytest.fixture
def fake_adb() -> FakeAdb:
    return FakeAdb()
