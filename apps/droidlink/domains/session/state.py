from enum import Enum


class SignalingState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    GATHERING = "gathering"
    ANSWERED = "answered"
    FAILED = "failed"


class ConnectivityState(str, Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


_SIGNALING_ORDER = {
    SignalingState.IDLE: 0,
    SignalingState.NEGOTIATING: 1,
    SignalingState.GATHERING: 2,
    SignalingState.ANSWERED: 3,
}

_CONNECTIVITY_ORDER = {
    ConnectivityState.NEW: 0,
    ConnectivityState.CHECKING: 1,
    ConnectivityState.CONNECTED: 2,
}

TERMINAL_CONNECTIVITY = frozenset(
    {
        ConnectivityState.DISCONNECTED,
        ConnectivityState.FAILED,
        ConnectivityState.CLOSED,
    }
)

# aiortc reports "connecting" where the connectivity track says "checking".
_PEER_STATES = {
    "new": ConnectivityState.NEW,
    "connecting": ConnectivityState.CHECKING,
    "checking": ConnectivityState.CHECKING,
    "connected": ConnectivityState.CONNECTED,
    "completed": ConnectivityState.CONNECTED,
    "disconnected": ConnectivityState.DISCONNECTED,
    "failed": ConnectivityState.FAILED,
    "closed": ConnectivityState.CLOSED,
}


def connectivity_from_peer(state: str) -> ConnectivityState:
    try:
        return _PEER_STATES[str(state).lower()]
    except KeyError as exc:
        raise ValueError("unknown peer connection state: {}".format(state)) from exc


def can_advance_signaling(current: SignalingState, target: SignalingState) -> bool:
    if current in (SignalingState.ANSWERED, SignalingState.FAILED):
        return False
    if target is SignalingState.FAILED:
        return True
    return _SIGNALING_ORDER[target] == _SIGNALING_ORDER[current] + 1


def can_advance_connectivity(
    current: ConnectivityState, target: ConnectivityState
) -> bool:
    if current in TERMINAL_CONNECTIVITY:
        return False
    if target in TERMINAL_CONNECTIVITY:
        return True
    return _CONNECTIVITY_ORDER[target] > _CONNECTIVITY_ORDER[current]
