# core/format_handler.py

import struct
from enum import Enum


class ContainerKind(Enum):
    PNG            = "PNG"
    JPEG           = "JPEG"
    WEBP           = "WEBP"
    AVIF           = "AVIF"
    TENSOR_ARCHIVE = "TENSOR_ARCHIVE"
    UNKNOWN        = "UNKNOWN"


# ---------------------------------------------------------------------------
# Magic byte signatures for format detection
# These are read from the actual bytes — never trust the URL extension alone
# ---------------------------------------------------------------------------

MAGIC_PNG       = b'\x89PNG\r\n\x1a\n'
MAGIC_JPEG      = b'\xff\xd8\xff'
MAGIC_WEBP_RIFF = b'RIFF'
MAGIC_WEBP_WEBP = b'WEBP'  # at offset 8
MAGIC_FTYP      = b'ftyp'  # at offset 4
AVIF_BRANDS     = {b'avif', b'avis'}

# Number of leading bytes the sniffer needs to tell every kind apart
SNIFF_BYTES = 16

# Upper bound on a tensor archive JSON header. Anything larger is treated as
# a coincidental byte pattern, not a header length.
MAX_TENSOR_HEADER = 100 * 1024 * 1024


def _is_tensor_archive(data: bytes) -> bool:
    """
    Tensor archives start with an 8-byte little-endian header length,
    followed by the JSON header itself, which always opens with '{'.
    """
    if len(data) < 9:
        return False
    header_len = struct.unpack("<Q", data[:8])[0]
    if header_len < 2 or header_len > MAX_TENSOR_HEADER:
        return False
    return data[8:9] == b'{'


def _is_avif(data: bytes) -> bool:
    """
    ISO-BMFF files open with an 'ftyp' box. The major brand sits right after
    the box type; compatible brands follow the minor version and are checked
    too when the whole box is in the buffer.
    """
    if data[4:8] != MAGIC_FTYP:
        return False
    if data[8:12] in AVIF_BRANDS:
        return True

    box_size = struct.unpack(">I", data[0:4])[0]
    if box_size < 16 or box_size > len(data):
        return False
    for pos in range(16, box_size - 3, 4):
        if data[pos:pos + 4] in AVIF_BRANDS:
            return True
    return False


def pending_ftyp_size(data: bytes) -> int | None:
    """
    Declared size of an ftyp box that runs past the buffer, else None.
    Until the whole box is in hand, compatible brands cannot be checked,
    so such a buffer is neither AVIF nor UNKNOWN yet.
    """
    if len(data) < 8 or data[4:8] != MAGIC_FTYP or data[8:12] in AVIF_BRANDS:
        return None
    box_size = struct.unpack(">I", data[0:4])[0]
    return box_size if box_size > len(data) else None


def sniff(data: bytes) -> ContainerKind:
    """
    Identify the container kind from leading magic bytes.
    Order matters — check more specific signatures first.
    Never raises; an unrecognised buffer is simply UNKNOWN.
    """
    if data[:8] == MAGIC_PNG:
        return ContainerKind.PNG
    if data[:3] == MAGIC_JPEG:
        return ContainerKind.JPEG
    if data[:4] == MAGIC_WEBP_RIFF and data[8:12] == MAGIC_WEBP_WEBP:
        return ContainerKind.WEBP
    if len(data) >= 12 and _is_avif(data):
        return ContainerKind.AVIF
    if _is_tensor_archive(data):
        return ContainerKind.TENSOR_ARCHIVE
    return ContainerKind.UNKNOWN


def is_tensor_archive_url(url: str) -> bool:
    """True when the URL points at a .safetensors download."""
    lowered = url.lower()
    return ".safetensors" in lowered or "format=safetensor" in lowered
