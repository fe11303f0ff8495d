import asyncio
import logging
import re
import threading
import uuid
from typing import Callable, Iterable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)

from infra.adb import AdbClient
from shared.errors import ClientInputError, NegotiationError

from ...api.schemas import SessionDescription
from ...settings import ServerSettings
from ..control import ControlChannel
from ..device import Resolution, ResolutionProbe, ResolutionScale
from ..stream import CaptureCommand, H264SampleTrack, MediaRelay, build_capture_command
from .state import (
    TERMINAL_CONNECTIVITY,
    ConnectivityState,
    SignalingState,
    can_advance_connectivity,
    can_advance_signaling,
    connectivity_from_peer,
)

logger = logging.getLogger("droidlink.session")

_H264_RTPMAP_RE = re.compile(r"^a=rtpmap:\d+ H264/90000", re.IGNORECASE | re.MULTILINE)
_VIDEO_SECTION_RE = re.compile(r"^m=video ", re.MULTILINE)


def ice_configuration(urls: Iterable[str]) -> RTCConfiguration:
    """An empty url list means host candidates only."""
    urls = [url for url in urls if url]
    if not urls:
        return RTCConfiguration(iceServers=[])
    return RTCConfiguration(iceServers=[RTCIceServer(urls=urls)])


def offer_has_video(sdp: str) -> bool:
    return _VIDEO_SECTION_RE.search(sdp or "") is not None


def offer_has_h264(sdp: str) -> bool:
    return _H264_RTPMAP_RE.search(sdp or "") is not None


def count_candidates(sdp: str) -> int:
    lines = (sdp or "").splitlines()
    return sum(1 for line in lines if line.startswith("a=candidate:"))


def prefer_h264(transceiver) -> bool:
    capabilities = RTCRtpSender.getCapabilities("video")
    h264 = [
        codec
        for codec in capabilities.codecs
        if codec.mimeType.lower() == "video/h264"
    ]
    if not h264:
        return False
    h264.sort(
        key=lambda codec: (codec.parameters or {}).get("packetization-mode") != "1"
    )
    rtx = [
        codec for codec in capabilities.codecs if codec.mimeType.lower() == "video/rtx"
    ]
    transceiver.setCodecPreferences(h264 + rtx)
    return True


async def wait_for_ice_gathering(pc, timeout: float) -> None:
    if pc.iceGatheringState == "complete":
        return
    done = asyncio.Event()

    @pc.on("icegatheringstatechange")
    def on_state_change() -> None:
        if pc.iceGatheringState == "complete":
            done.set()

    try:
        await asyncio.wait_for(done.wait(), timeout)
    except asyncio.TimeoutError as exc:
        raise NegotiationError(
            "ice gathering did not complete within {}s".format(timeout)
        ) from exc


def _default_peer_factory(configuration: RTCConfiguration):
    return RTCPeerConnection(configuration=configuration)


class Session:
    """
    One viewer connection: peer connection, video sink, control channel and
    the media relay feeding the sink.

    Negotiation fields are only written while holding the negotiation lock;
    the sink/channel handles have their own lock so the media and control
    paths never wait on a negotiation.
    """

    def __init__(
        self,
        *,
        adb: AdbClient,
        capture_command: CaptureCommand,
        resolution: Resolution,
        ice_urls: Iterable[str] = (),
        gathering_timeout: float = 15.0,
        kill_timeout: float = 5.0,
        peer_factory: Optional[Callable] = None,
        relay_factory: Optional[Callable] = None,
        on_closed: Optional[Callable[["Session"], None]] = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.resolution = resolution
        self.scale = ResolutionScale.for_resolution(resolution)
        self.signaling = SignalingState.IDLE
        self.connectivity = ConnectivityState.NEW
        self.remote_description: Optional[RTCSessionDescription] = None
        self.local_description: Optional[RTCSessionDescription] = None
        self.candidate_count = 0
        self._adb = adb
        self._ice_urls: List[str] = list(ice_urls)
        self._gathering_timeout = gathering_timeout
        self._peer_factory = peer_factory or _default_peer_factory
        relay_factory = relay_factory or (
            lambda command: MediaRelay(command, kill_timeout=kill_timeout)
        )
        self._relay = relay_factory(capture_command)
        self._on_closed = on_closed
        self._negotiation_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()
        self._handles_lock = threading.Lock()
        self._pc = None
        self._sink: Optional[H264SampleTrack] = None
        self._control: Optional[ControlChannel] = None
        self._closed = False
        if resolution.fallback:
            logger.warning(
                "session %s scales input with fallback resolution %s",
                self.id,
                resolution,
            )
        else:
            logger.info(
                "session %s scales input to %s (x%.3f, y%.3f)",
                self.id,
                resolution,
                self.scale.scale_x,
                self.scale.scale_y,
            )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def relay(self):
        return self._relay

    @property
    def sink(self) -> Optional[H264SampleTrack]:
        with self._handles_lock:
            return self._sink

    @property
    def control(self) -> Optional[ControlChannel]:
        with self._handles_lock:
            return self._control

    def _advance_signaling(self, target: SignalingState) -> None:
        if not can_advance_signaling(self.signaling, target):
            raise NegotiationError(
                "invalid signaling transition {} -> {}".format(
                    self.signaling.value, target.value
                )
            )
        logger.debug(
            "session %s signaling %s -> %s",
            self.id,
            self.signaling.value,
            target.value,
        )
        self.signaling = target

    def _setup_peer(self, with_video: bool = True):
        pc = self._peer_factory(ice_configuration(self._ice_urls))
        sink = H264SampleTrack() if with_video else None
        control = ControlChannel(self._adb, self.scale)
        with self._handles_lock:
            self._pc = pc
            self._sink = sink
            self._control = control

        if sink is not None:
            sender = pc.addTrack(sink)
            transceiver = next(
                (item for item in pc.getTransceivers() if item.sender == sender),
                None,
            )
            if transceiver is not None and prefer_h264(transceiver):
                logger.debug("session %s prefers h264", self.id)
        else:
            logger.info("session %s offer has no video, control only", self.id)

        @pc.on("datachannel")
        def on_datachannel(channel) -> None:
            control.attach(channel)

        @pc.on("icegatheringstatechange")
        def on_gathering_state() -> None:
            logger.info("session %s ice gathering %s", self.id, pc.iceGatheringState)

        @pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            await self._on_connection_state(pc.connectionState)

        return pc

    async def negotiate(self, offer: RTCSessionDescription) -> RTCSessionDescription:
        async with self._negotiation_lock:
            if self._closed:
                raise NegotiationError("session {} is closed".format(self.id))
            self._advance_signaling(SignalingState.NEGOTIATING)
            self.remote_description = offer
            try:
                with_video = offer_has_video(offer.sdp)
                if with_video and not offer_has_h264(offer.sdp):
                    raise NegotiationError("client does not offer h264")
                pc = self._setup_peer(with_video)
                logger.info("session %s setting remote description", self.id)
                await pc.setRemoteDescription(offer)
                answer = await pc.createAnswer()
                self._advance_signaling(SignalingState.GATHERING)
                logger.info("session %s setting local description", self.id)
                await pc.setLocalDescription(answer)
                await wait_for_ice_gathering(pc, self._gathering_timeout)
                local = pc.localDescription
                if local is None:
                    raise NegotiationError("no local description after gathering")
            except asyncio.CancelledError:
                self.signaling = SignalingState.FAILED
                await self.close()
                raise
            except Exception as exc:
                logger.error("session %s negotiation failed: %s", self.id, exc)
                self.signaling = SignalingState.FAILED
                await self.close()
                if isinstance(exc, NegotiationError):
                    raise
                raise NegotiationError(str(exc) or exc.__class__.__name__) from exc
            self.local_description = RTCSessionDescription(
                sdp=local.sdp, type=local.type
            )
            self.candidate_count = count_candidates(local.sdp)
            if self.candidate_count:
                logger.info(
                    "session %s ice gathering complete (%d candidates)",
                    self.id,
                    self.candidate_count,
                )
            else:
                logger.warning("session %s answer carries no candidates", self.id)
            self._advance_signaling(SignalingState.ANSWERED)
            return self.local_description

    async def _on_connection_state(self, peer_state: str) -> None:
        if self._closed:
            return
        try:
            state = connectivity_from_peer(peer_state)
        except ValueError as exc:
            logger.warning("session %s: %s", self.id, exc)
            return
        logger.info("session %s connection state %s", self.id, peer_state)
        if not can_advance_connectivity(self.connectivity, state):
            logger.debug(
                "session %s ignoring connectivity %s -> %s",
                self.id,
                self.connectivity.value,
                state.value,
            )
            return
        self.connectivity = state
        if state is ConnectivityState.CONNECTED:
            self._start_relay()
        elif state in TERMINAL_CONNECTIVITY:
            await self.close()

    def _start_relay(self) -> bool:
        with self._handles_lock:
            sink = self._sink
        if self._closed or sink is None or not sink.available:
            return False
        if self._relay.active:
            logger.info("session %s relay already running", self.id)
            return False
        logger.info("session %s connected, starting relay", self.id)
        return self._relay.start(sink)

    async def close(self) -> None:
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True
            logger.info("closing session %s", self.id)
            with self._handles_lock:
                pc, sink, control = self._pc, self._sink, self._control
                self._pc = None
                self._sink = None
                self._control = None
            # Sink first: a relay blocked on a full sink queue then returns.
            if sink is not None:
                sink.stop()
            await asyncio.to_thread(self._relay.stop)
            if control is not None:
                await asyncio.to_thread(control.close)
            if pc is not None:
                await pc.close()
            if self.connectivity not in TERMINAL_CONNECTIVITY:
                self.connectivity = ConnectivityState.CLOSED
            logger.info("session %s closed", self.id)
        if self._on_closed is not None:
            self._on_closed(self)


class SessionNegotiator:
    """
    Entry point for offers. Offers are handled one at a time; an offer that
    arrives while a session is live replaces that session.
    """

    def __init__(
        self,
        adb: AdbClient,
        capture_command: CaptureCommand,
        *,
        ice_urls: Iterable[str] = (),
        gathering_timeout: float = 15.0,
        kill_timeout: float = 5.0,
        probe: Optional[ResolutionProbe] = None,
        peer_factory: Optional[Callable] = None,
        relay_factory: Optional[Callable] = None,
    ) -> None:
        self._adb = adb
        self.capture_command = capture_command
        self.ice_urls: List[str] = list(ice_urls)
        self._gathering_timeout = gathering_timeout
        self._kill_timeout = kill_timeout
        self._probe = probe or ResolutionProbe(adb)
        self._peer_factory = peer_factory
        self._relay_factory = relay_factory
        self._lock = asyncio.Lock()
        self._session: Optional[Session] = None

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> "SessionNegotiator":
        adb = AdbClient(
            adb_path=settings.resolved_adb_path,
            device_id=settings.device_id,
            timeout=settings.adb_timeout,
        )
        return cls(
            adb,
            build_capture_command(settings, adb),
            ice_urls=settings.webrtc_ice_urls,
            gathering_timeout=settings.ice_gathering_timeout,
            kill_timeout=settings.relay_kill_timeout,
            probe=ResolutionProbe(adb, timeout=settings.adb_timeout),
        )

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def _forget(self, session: Session) -> None:
        if self._session is session:
            self._session = None

    async def handle_offer(self, offer: SessionDescription) -> RTCSessionDescription:
        if offer.type != "offer":
            raise ClientInputError("invalid sdp type: {}".format(offer.type))
        if not offer.sdp.strip():
            raise ClientInputError("empty sdp")
        logger.info("received %s, sdp %d bytes", offer.type, len(offer.sdp))
        logger.debug("offer sdp:\n%s", offer.sdp)
        description = RTCSessionDescription(sdp=offer.sdp, type=offer.type)
        async with self._lock:
            previous = self._session
            if previous is not None:
                logger.info("replacing session %s", previous.id)
                await previous.close()
            resolution = await asyncio.to_thread(self._probe.probe)
            session = Session(
                adb=self._adb,
                capture_command=self.capture_command,
                resolution=resolution,
                ice_urls=self.ice_urls,
                gathering_timeout=self._gathering_timeout,
                kill_timeout=self._kill_timeout,
                peer_factory=self._peer_factory,
                relay_factory=self._relay_factory,
                on_closed=self._forget,
            )
            self._session = session
            return await session.negotiate(description)

    async def shutdown(self) -> None:
        session = self._session
        if session is not None:
            await session.close()
