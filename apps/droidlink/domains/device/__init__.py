from .resolution import (
    FALLBACK_RESOLUTION,
    Resolution,
    ResolutionProbe,
    ResolutionScale,
    parse_screen_size,
)

__all__ = [
    "FALLBACK_RESOLUTION",
    "Resolution",
    "ResolutionProbe",
    "ResolutionScale",
    "parse_screen_size",
]
