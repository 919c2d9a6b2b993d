"""
Error taxonomy for metadata resolution.

Only TransportError ever reaches the caller of the resolver. The others are
raised and handled inside the pipeline:

    TruncatedInputError     — buffer ended early; drives the fetch escalation
    MalformedContainerError — corrupt headers on a complete body; degrades to
                              an empty (cacheable) result
    DecodeError             — stealth channel decode failed; treated as
                              "no hidden data"
"""


class MetascryError(Exception):
    """Base class for every error raised by the core."""


class TransportError(MetascryError):
    """Network failure, timeout, or non-success status on a full fetch."""

    def __init__(self, message: str, url: str = "", status: int | None = None):
        super().__init__(message)
        self.url    = url
        self.status = status


class TruncatedInputError(MetascryError):
    """The buffer ends before the structure being read."""

    def __init__(self, message: str, needed: int):
        super().__init__(message)
        self.needed = needed


class MalformedContainerError(MetascryError):
    """The container headers are inconsistent on data known to be complete."""


class DecodeError(MetascryError):
    """The stealth alpha channel payload could not be recovered."""
