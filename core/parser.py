"""
Container parser entry point.

This module is the single entry point for metadata parsing. The caller
never needs to know which container it holds — the leading bytes are
sniffed and the matching handler is looked up in a closed table.

Contract:
    parse_metadata(data, total_length) -> Complete | Incomplete | Failed

    - Incomplete always asks for more bytes than the buffer holds, and never
      more than total_length when that is known.
    - Incomplete is never returned for a buffer known to be the whole
      resource; such a buffer is corrupt and yields Failed instead.
    - Unexpected exceptions on a partial buffer are treated as truncation.
"""

import logging

from core.errors import MalformedContainerError, TruncatedInputError
from core.exif_metadata import parse_avif, parse_jpeg, parse_webp
from core.format_handler import SNIFF_BYTES, ContainerKind, pending_ftyp_size, sniff
from core.outcome import Complete, Failed, Incomplete, ParseOutcome, need
from core.png_metadata import TARGET_KEYWORDS, parse_png
from core.tensor_metadata import parse_tensor_archive

logger = logging.getLogger(__name__)


def _png_handler(keywords):
    return lambda data, total_length: parse_png(data, total_length, keywords)


def _handlers(keywords: tuple[str, ...]) -> dict:
    return {
        ContainerKind.PNG            : _png_handler(keywords),
        ContainerKind.JPEG           : parse_jpeg,
        ContainerKind.WEBP           : parse_webp,
        ContainerKind.AVIF           : parse_avif,
        ContainerKind.TENSOR_ARCHIVE : parse_tensor_archive,
    }


def parse_metadata(
    data        : bytes,
    total_length: int | None = None,
    keywords    : tuple[str, ...] = TARGET_KEYWORDS,
) -> ParseOutcome:
    """
    Parse embedded metadata from a possibly truncated buffer.

    Args:
        data         : leading bytes of the resource
        total_length : full resource length if known; pass len(data) when
                       the buffer is the whole resource
        keywords     : PNG text keywords to keep

    Returns:
        Complete(metadata), Incomplete(suggested_min_bytes) or Failed(error).
        Never raises.
    """
    size     = len(data)
    complete = total_length is not None and size >= total_length

    if size < SNIFF_BYTES and not complete:
        return _bounded(need(SNIFF_BYTES, size), total_length)

    kind = sniff(data)
    if kind is ContainerKind.UNKNOWN:
        pending = None if complete else pending_ftyp_size(data)
        if pending is not None:
            return _bounded(need(pending, size), total_length)
        return Complete({})

    handler = _handlers(keywords)[kind]
    try:
        outcome = handler(data, total_length)
    except TruncatedInputError as e:
        outcome = need(e.needed, size)
    except MalformedContainerError as e:
        outcome = Failed(e)
    except Exception as e:
        if not complete:
            logger.debug("[PARSER] %s parse raised on partial data (%d bytes): %s",
                         kind.value, size, e)
            return _bounded(need(size * 2, size), total_length)
        outcome = Failed(MalformedContainerError(f"{kind.value} parse failed: {e}"))

    if isinstance(outcome, Incomplete) and complete:
        return Failed(MalformedContainerError(
            f"{kind.value} container is truncated: {size} bytes present, "
            f"structure needs {outcome.suggested_min_bytes}."
        ))

    return _bounded(outcome, total_length)


def _bounded(outcome: ParseOutcome, total_length: int | None) -> ParseOutcome:
    """Clamp an Incomplete suggestion to the known resource length."""
    if (
        isinstance(outcome, Incomplete)
        and total_length is not None
        and outcome.suggested_min_bytes > total_length
    ):
        return Incomplete(total_length)
    return outcome
