from .capture import CaptureCommand, build_capture_command
from .framer import MediaFrame, NalFramer
from .relay import MediaRelay, RelayResult
from .track import H264SampleTrack

__all__ = [
    "CaptureCommand",
    "H264SampleTrack",
    "MediaFrame",
    "MediaRelay",
    "NalFramer",
    "RelayResult",
    "build_capture_command",
]
