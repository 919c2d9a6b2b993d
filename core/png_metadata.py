"""
PNG text chunk reader.

Walks the chunk list sequentially from offset 8:

    4-byte big-endian length | 4-byte type | payload | 4-byte CRC

and collects the text chunks AI image generators write:

    tEXt — keyword \\0 text                       (uncompressed)
    zTXt — keyword \\0 method compressed-text     (zlib)
    iTXt — keyword \\0 flag method lang \\0 translated \\0 text
                                                   (optionally zlib)

Generators (A1111, ComfyUI, NovelAI) place their text chunks before the
image data, so once text has been found and the first IDAT chunk is
reached there is nothing left to read. Without any text the walk runs to
IEND, which is the only definitive negative.

The CRC is not verified: truncation is expected here, corruption is not
worth the cost of checking.
"""

import logging
import struct
import zlib

from core.outcome import Complete, Incomplete, ParseOutcome, need
from core.utils import decode_text

logger = logging.getLogger(__name__)

PNG_SIGNATURE_LEN = 8
CHUNK_OVERHEAD    = 12   # length + type + crc

# Keywords written by the generators this tool understands
TARGET_KEYWORDS = (
    "parameters",       # Stable Diffusion (A1111)
    "prompt",           # ComfyUI
    "workflow",         # ComfyUI
    "generation_data",  # ComfyUI variants
    "Description",      # NovelAI prompt
    "Comment",          # NovelAI settings JSON
)

TEXT_CHUNKS = {b"tEXt", b"zTXt", b"iTXt"}


def parse_png(
    data        : bytes,
    total_length: int | None = None,
    keywords    : tuple[str, ...] = TARGET_KEYWORDS,
) -> ParseOutcome:
    """
    Extract text metadata from a (possibly truncated) PNG buffer.

    Args:
        data         : PNG bytes, starting at the signature
        total_length : logical file length if known (unused — the chunk
                       walk is self-delimiting)
        keywords     : text keywords to keep; everything else is ignored

    Returns:
        Complete(found) at IEND or at the first IDAT after text was found,
        Incomplete when a chunk runs past the end of the buffer.
    """
    size   = len(data)
    offset = PNG_SIGNATURE_LEN
    found  = {}

    while True:
        if offset + 8 > size:
            # Cut inside a chunk header — ask for it plus a safety margin
            return need((offset + CHUNK_OVERHEAD) * 2, size)

        length, chunk_type = struct.unpack(">I4s", data[offset:offset + 8])

        if chunk_type == b"IEND":
            return Complete(found)

        if chunk_type == b"IDAT" and found:
            return Complete(found)

        end = offset + CHUNK_OVERHEAD + length
        if end > size:
            return need((offset + length + CHUNK_OVERHEAD) * 2, size)

        if chunk_type in TEXT_CHUNKS:
            payload = data[offset + 8:offset + 8 + length]
            entry   = _read_text_chunk(chunk_type, payload)
            if entry is not None:
                keyword, text = entry
                if keyword in keywords:
                    found[keyword] = text

        offset = end


# ---------------------------------------------------------------------------
# Chunk payload decoders
# Each returns (keyword, text) or None if the payload is unusable. A bad
# chunk is skipped, never fatal to the walk.
# ---------------------------------------------------------------------------

def _read_text_chunk(chunk_type: bytes, payload: bytes) -> tuple[str, str] | None:
    try:
        if chunk_type == b"tEXt":
            return _read_text(payload)
        if chunk_type == b"zTXt":
            return _read_ztxt(payload)
        return _read_itxt(payload)
    except zlib.error as e:
        logger.debug("[PARSER] Skipping %s chunk, inflate failed: %s",
                     chunk_type.decode("latin-1"), e)
        return None


def _read_text(payload: bytes) -> tuple[str, str] | None:
    """tEXt: keyword NUL text."""
    sep = payload.find(b"\x00")
    if sep == -1:
        return None
    keyword = decode_text(payload[:sep])
    # The PNG standard says Latin-1, but every generator writes UTF-8
    text = decode_text(payload[sep + 1:])
    return keyword, text


def _read_ztxt(payload: bytes) -> tuple[str, str] | None:
    """zTXt: keyword NUL method(=0) zlib-stream."""
    sep = payload.find(b"\x00")
    if sep == -1 or sep + 2 > len(payload):
        return None
    keyword = decode_text(payload[:sep])
    text    = decode_text(zlib.decompress(payload[sep + 2:]))
    return keyword, text


def _read_itxt(payload: bytes) -> tuple[str, str] | None:
    """
    iTXt: keyword NUL compression-flag compression-method
          language-tag NUL translated-keyword NUL text
    """
    sep = payload.find(b"\x00")
    if sep == -1 or sep + 3 > len(payload):
        return None
    keyword = decode_text(payload[:sep])
    pos     = sep + 1

    compressed = payload[pos] == 1
    pos += 2  # flag + method

    lang_end = payload.find(b"\x00", pos)
    if lang_end == -1:
        return None
    pos = lang_end + 1

    trans_end = payload.find(b"\x00", pos)
    if trans_end == -1:
        return None
    pos = trans_end + 1

    raw = payload[pos:]
    if compressed:
        raw = zlib.decompress(raw)
    return keyword, decode_text(raw)
