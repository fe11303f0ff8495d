from typing import Optional


class DroidLinkError(Exception):
    pass


class ClientInputError(DroidLinkError):
    """Malformed input from the remote peer (offer body or control message)."""


class NegotiationError(DroidLinkError):
    """The offer/answer exchange could not be completed."""


class AdbError(DroidLinkError):
    """A device shell invocation failed or exited nonzero."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ResolutionUnavailable(DroidLinkError):
    pass
