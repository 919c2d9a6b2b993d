"""
Stealth PNG info decoder.

Some generators hide their parameters in the least significant bit of
the alpha channel instead of (or as well as) text chunks. The hidden
stream, read one bit per pixel in row-major order, is:

    15-byte signature | 32-bit big-endian payload length in BITS | payload

    "stealth_pnginfo" — payload is UTF-8 text (gzip'd if it carries the
                        gzip magic)
    "stealth_pngcomp" — payload is always gzip'd UTF-8 text

Failure philosophy:
    This path is speculative. Every failure — undecodable image, missing
    alpha, signature mismatch, bad length, corrupt gzip — means "no hidden
    payload" and returns None. Nothing is raised to the caller.
"""

import gzip
import logging
import struct
import zlib

import numpy as np

from core.errors import DecodeError
from core.utils import (
    bits_to_bytes,
    bytes_to_bits,
    has_alpha,
    open_image,
    to_rgba_array,
)

logger = logging.getLogger(__name__)

SIGNATURE_INFO = b"stealth_pnginfo"
SIGNATURE_COMP = b"stealth_pngcomp"
SIGNATURE_BITS = len(SIGNATURE_INFO) * 8   # 120
LENGTH_BITS    = 32
GZIP_MAGIC     = b"\x1f\x8b"

# Result key — distinguishes the alpha-derived value from chunk metadata
RESULT_KEY = "Stealth PNG Info (Alpha)"

# Thumbnails are not worth decoding
DEFAULT_MIN_PIXELS = 250_000

# 120-bit target pattern, kept as arrays for a single vectorised compare
_SIGNATURES = {
    SIGNATURE_INFO: bytes_to_bits(SIGNATURE_INFO),
    SIGNATURE_COMP: bytes_to_bits(SIGNATURE_COMP),
}


class StealthChannelDecoder:
    """
    Recovers a payload hidden in the alpha channel LSBs of a complete PNG.

    Args:
        min_pixels: images with fewer pixels than this are skipped
    """

    def __init__(self, min_pixels: int = DEFAULT_MIN_PIXELS):
        self.min_pixels = min_pixels

    def decode(self, png_bytes: bytes) -> dict | None:
        """
        Try to recover a hidden payload.

        Args:
            png_bytes: the COMPLETE PNG file — partial data cannot be decoded

        Returns:
            {RESULT_KEY: text} on success, None otherwise.
        """
        try:
            alpha_lsb = self._alpha_lsb(png_bytes)
            if alpha_lsb is None:
                return None
            text = decode_alpha_bits(alpha_lsb)
        except DecodeError as e:
            logger.debug("[STEALTH] No hidden payload: %s", e)
            return None

        if text is None:
            return None
        logger.debug("[STEALTH] Recovered %d characters from alpha channel", len(text))
        return {RESULT_KEY: text}

    def _alpha_lsb(self, png_bytes: bytes) -> np.ndarray | None:
        """
        Decode the image and return the alpha LSB of every pixel, row-major.
        None if the image has no alpha or is below the resolution gate.
        """
        try:
            img = open_image(png_bytes)
        except Exception as e:
            raise DecodeError(f"image decode failed: {e}") from e

        with img:
            if not has_alpha(img):
                return None
            width, height = img.size
            if width * height < self.min_pixels:
                return None
            rgba = to_rgba_array(img)

        return (rgba[:, :, 3].ravel() & 1).astype(np.uint8)


def decode_alpha_bits(bits: np.ndarray) -> str | None:
    """
    Decode a row-major alpha LSB bit stream.

    Returns:
        The hidden text, or None if the stream does not open with a known
        signature.

    Raises:
        DecodeError: if the signature matches but the payload is unusable.
    """
    if len(bits) < SIGNATURE_BITS:
        return None

    head = bits[:SIGNATURE_BITS]
    signature = None
    for candidate, pattern in _SIGNATURES.items():
        if np.array_equal(head, pattern):
            signature = candidate
            break
    if signature is None:
        return None

    length_end = SIGNATURE_BITS + LENGTH_BITS
    if len(bits) < length_end:
        raise DecodeError("stream ends inside the length field")

    payload_bits = struct.unpack(">I", bits_to_bytes(bits[SIGNATURE_BITS:length_end]))[0]
    if payload_bits == 0 or payload_bits % 8 != 0:
        raise DecodeError(f"payload length {payload_bits} is not a whole number of bytes")
    if length_end + payload_bits > len(bits):
        raise DecodeError(
            f"payload length {payload_bits} exceeds the {len(bits) - length_end} "
            f"bits available"
        )

    payload = bits_to_bytes(bits[length_end:length_end + payload_bits])

    if signature == SIGNATURE_COMP or payload.startswith(GZIP_MAGIC):
        try:
            payload = gzip.decompress(payload)
        except (OSError, EOFError, zlib.error) as e:
            raise DecodeError(f"gzip payload is corrupt: {e}") from e

    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"payload is not UTF-8: {e}") from e


def encode_stealth_payload(rgba: np.ndarray, text: str, compress: bool = True) -> np.ndarray:
    """
    Hide text in the alpha channel LSBs of an RGBA array.

    Each bit of signature + length + payload overwrites the LSB of one
    pixel's alpha value, row-major. Alpha values change by at most 1.

    Args:
        rgba     : (H, W, 4) uint8 array — not modified
        text     : the text to hide
        compress : gzip the payload ("stealth_pngcomp"); otherwise store it
                   as plain UTF-8 ("stealth_pnginfo")

    Returns:
        A new RGBA array carrying the payload.

    Raises:
        ValueError: if the array is not RGBA or the payload does not fit.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected an (H, W, 4) array, got shape {rgba.shape}.")

    payload   = text.encode("utf-8")
    signature = SIGNATURE_INFO
    if compress:
        payload   = gzip.compress(payload)
        signature = SIGNATURE_COMP

    stream = signature + struct.pack(">I", len(payload) * 8) + payload
    bits   = bytes_to_bits(stream)

    out   = rgba.copy()
    alpha = out[:, :, 3].ravel()   # copy — ravel of a strided view
    if len(bits) > len(alpha):
        raise ValueError(
            f"Payload too large. Needs {len(bits)} pixels, "
            f"image has {len(alpha)}."
        )

    alpha[:len(bits)] = (alpha[:len(bits)] & 0xFE) | bits
    out[:, :, 3] = alpha.reshape(out.shape[:2])
    return out
