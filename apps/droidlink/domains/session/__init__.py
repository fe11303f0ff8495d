from .service import Session, SessionNegotiator
from .state import ConnectivityState, SignalingState

__all__ = ["ConnectivityState", "Session", "SessionNegotiator", "SignalingState"]
