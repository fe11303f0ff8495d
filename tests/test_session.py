"""Tests covering offer negotiation and the session lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from conftest import (
    CONTROL_ONLY_SDP,
    OFFER_SDP,
    VP8_ONLY_SDP,
    FakeAdb,
    FakePeerConnection,
    FakeProbe,
    FakeRelay,
)
from droidlink.api.schemas import SessionDescription
from droidlink.domains.device import Resolution
from droidlink.domains.session import (
    ConnectivityState,
    SessionNegotiator,
    SignalingState,
)
from droidlink.domains.session.state import (
    can_advance_connectivity,
    can_advance_signaling,
    connectivity_from_peer,
)
from droidlink.domains.stream import CaptureCommand
from shared.errors import ClientInputError, NegotiationError

COMMAND = CaptureCommand.from_argv("testsrc", ["ffmpeg", "-f", "lavfi"])


class Harness:
    def __init__(self, **peer_kwargs) -> None:
        self.peers = []
        self.relays = []
        self.probe = FakeProbe(Resolution(720, 1280))
        self.peer_kwargs = peer_kwargs

    def peer_factory(self, configuration):
        peer = FakePeerConnection(configuration, **self.peer_kwargs)
        self.peers.append(peer)
        return peer

    def relay_factory(self, command):
        relay = FakeRelay(command)
        self.relays.append(relay)
        return relay

    def negotiator(self, **kwargs) -> SessionNegotiator:
        kwargs.setdefault("ice_urls", ["stun:stun.example.org:3478"])
        return SessionNegotiator(
            FakeAdb(),
            COMMAND,
            probe=self.probe,
            peer_factory=self.peer_factory,
            relay_factory=self.relay_factory,
            **kwargs,
        )


def _offer(sdp: str = OFFER_SDP, type: str = "offer") -> SessionDescription:
    return SessionDescription(sdp=sdp, type=type)


def test_answer_is_returned_after_gathering() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        answer = await negotiator.handle_offer(_offer())
        session = negotiator.session
        await negotiator.shutdown()
        return answer, session

    answer, session = asyncio.run(scenario())
    peer = harness.peers[0]

    assert answer.type == "answer"
    assert "a=candidate:1" in answer.sdp
    assert session.signaling is SignalingState.ANSWERED
    assert session.candidate_count == 2
    assert peer.remoteDescription.sdp == OFFER_SDP
    assert peer.configuration.iceServers[0].urls == ["stun:stun.example.org:3478"]
    assert session.scale.apply(540, 960) == (360, 640)


def test_video_sender_prefers_h264() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        await negotiator.shutdown()

    asyncio.run(scenario())
    preferences = harness.peers[0].transceivers[0].preferences

    assert preferences
    assert preferences[0].mimeType.lower() == "video/h264"
    assert {codec.mimeType.lower() for codec in preferences} <= {
        "video/h264",
        "video/rtx",
    }


def test_no_ice_servers_means_host_candidates_only() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator(ice_urls=[])
        await negotiator.handle_offer(_offer())
        await negotiator.shutdown()

    asyncio.run(scenario())

    assert harness.peers[0].configuration.iceServers == []


def test_relay_starts_once_when_connected() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        peer = harness.peers[0]
        await peer.set_connection_state("connecting")
        await peer.set_connection_state("connected")
        await peer.set_connection_state("connected")
        session = negotiator.session
        state = session.connectivity
        sink_available = session.sink.available
        await negotiator.shutdown()
        return state, sink_available

    state, sink_available = asyncio.run(scenario())
    relay = harness.relays[0]

    assert state is ConnectivityState.CONNECTED
    assert sink_available
    assert relay.starts == 1
    assert relay.stops == 1


def test_terminal_state_tears_session_down() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        session = negotiator.session
        peer = harness.peers[0]
        await peer.set_connection_state("connected")
        sink = session.sink
        control = session.control
        await peer.set_connection_state("failed")
        return negotiator, session, sink, control

    negotiator, session, sink, control = asyncio.run(scenario())

    assert session.closed
    assert session.connectivity is ConnectivityState.FAILED
    assert negotiator.session is None
    assert harness.relays[0].stops == 1
    assert harness.peers[0].closed
    assert not sink.available
    assert control.closed


def test_close_is_idempotent() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        session = negotiator.session
        await asyncio.gather(session.close(), session.close())
        await session.close()
        return session

    session = asyncio.run(scenario())

    assert session.closed
    assert session.connectivity is ConnectivityState.CLOSED
    assert harness.relays[0].stops == 1


def test_connected_after_close_does_not_start_relay() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        session = negotiator.session
        await session.close()
        await harness.peers[0].set_connection_state("connected")

    asyncio.run(scenario())

    assert harness.relays[0].starts == 0


def test_negotiation_failure_releases_resources() -> None:
    harness = Harness(fail_on="remote")

    async def scenario():
        negotiator = harness.negotiator()
        with pytest.raises(NegotiationError, match="remote description rejected"):
            await negotiator.handle_offer(_offer())
        return negotiator

    negotiator = asyncio.run(scenario())

    assert negotiator.session is None
    assert harness.peers[0].closed
    assert harness.relays[0].stops == 1
    assert harness.relays[0].starts == 0


def test_offer_without_h264_is_rejected() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        with pytest.raises(NegotiationError, match="h264"):
            await negotiator.handle_offer(_offer(VP8_ONLY_SDP))

    asyncio.run(scenario())

    assert harness.peers == []


def test_offer_without_video_negotiates_control_only() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        answer = await negotiator.handle_offer(_offer(CONTROL_ONLY_SDP))
        session = negotiator.session
        has_sink = session.sink is not None
        has_control = session.control is not None
        await harness.peers[0].set_connection_state("connected")
        await negotiator.shutdown()
        return answer, has_sink, has_control

    answer, has_sink, has_control = asyncio.run(scenario())

    assert answer.type == "answer"
    assert not has_sink
    assert has_control
    assert harness.peers[0].transceivers == []
    assert harness.peers[0].remoteDescription.sdp == CONTROL_ONLY_SDP
    assert harness.relays[0].starts == 0


def test_gathering_timeout_fails_negotiation() -> None:
    harness = Harness(gather=False)

    async def scenario():
        negotiator = harness.negotiator(gathering_timeout=0.05)
        with pytest.raises(NegotiationError, match="ice gathering"):
            await negotiator.handle_offer(_offer())
        return negotiator

    negotiator = asyncio.run(scenario())

    assert negotiator.session is None
    assert harness.peers[0].closed


def test_wrong_description_type_is_client_error() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        with pytest.raises(ClientInputError):
            await negotiator.handle_offer(_offer(type="answer"))
        with pytest.raises(ClientInputError):
            await negotiator.handle_offer(_offer(sdp="   "))

    asyncio.run(scenario())

    assert harness.probe.calls == 0


def test_second_offer_replaces_live_session() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        await negotiator.handle_offer(_offer())
        first = negotiator.session
        await harness.peers[0].set_connection_state("connected")
        await negotiator.handle_offer(_offer())
        second = negotiator.session
        await negotiator.shutdown()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not second
    assert first.closed
    assert harness.relays[0].stops == 1
    assert harness.probe.calls == 2


def test_concurrent_offers_are_serialized() -> None:
    harness = Harness()

    async def scenario():
        negotiator = harness.negotiator()
        answers = await asyncio.gather(
            negotiator.handle_offer(_offer()), negotiator.handle_offer(_offer())
        )
        live = negotiator.session
        await negotiator.shutdown()
        return answers, live

    answers, live = asyncio.run(scenario())

    assert all(answer.type == "answer" for answer in answers)
    assert len(harness.peers) == 2
    assert harness.peers[0].closed
    assert live.closed


def test_connectivity_mapping() -> None:
    assert connectivity_from_peer("connecting") is ConnectivityState.CHECKING
    assert connectivity_from_peer("completed") is ConnectivityState.CONNECTED
    with pytest.raises(ValueError):
        connectivity_from_peer("exploded")


def test_states_only_move_forward() -> None:
    assert can_advance_signaling(SignalingState.IDLE, SignalingState.NEGOTIATING)
    assert not can_advance_signaling(SignalingState.IDLE, SignalingState.ANSWERED)
    assert can_advance_signaling(SignalingState.GATHERING, SignalingState.FAILED)
    assert not can_advance_signaling(SignalingState.ANSWERED, SignalingState.FAILED)
    assert can_advance_connectivity(ConnectivityState.NEW, ConnectivityState.CONNECTED)
    assert not can_advance_connectivity(
        ConnectivityState.CONNECTED, ConnectivityState.CHECKING
    )
    assert not can_advance_connectivity(
        ConnectivityState.CLOSED, ConnectivityState.CONNECTED
    )
