"""
Parse outcomes shared by every container handler.

A handler returns exactly one of:
    Complete   — metadata extracted (an empty dict is a definitive negative)
    Incomplete — the buffer ended too early; retry with at least
                 suggested_min_bytes bytes
    Failed     — the container is corrupt
"""

from dataclasses import dataclass, field
from typing import Any, Union

MetadataMap = dict[str, Any]


@dataclass(frozen=True)
class Complete:
    metadata : MetadataMap = field(default_factory=dict)


@dataclass(frozen=True)
class Incomplete:
    suggested_min_bytes : int


@dataclass(frozen=True)
class Failed:
    error : Exception


ParseOutcome = Union[Complete, Incomplete, Failed]


def need(suggested: int, have: int) -> Incomplete:
    """
    Build an Incomplete that is guaranteed to ask for more than the buffer
    already holds, so a retry with the suggestion always makes progress.
    """
    return Incomplete(max(suggested, have + 1))
