import io
import numpy as np
from PIL import Image

# Pillow modes that carry an alpha channel
ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}


def decode_text(raw: bytes, encoding: str = "utf-8") -> str:
    """
    Decode bytes to text, replacing malformed sequences instead of raising.
    Metadata comes from untrusted files; one bad byte must never cost the
    whole parse.
    """
    return raw.decode(encoding, errors="replace")


def strip_nul(text: str) -> str:
    """Remove trailing NUL padding left by fixed-size EXIF fields."""
    return text.rstrip("\x00")


def open_image(data: bytes) -> Image.Image:
    """
    Open an in-memory image and force a full decode.
    Pillow decodes lazily, so truncated pixel data only fails on load().

    Raises:
        OSError / ValueError: if the bytes are not a decodable image.
    """
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def has_alpha(img: Image.Image) -> bool:
    """True if the image has an alpha channel or a transparency key."""
    return img.mode in ALPHA_MODES or "transparency" in img.info


def to_rgba_array(img: Image.Image) -> np.ndarray:
    """Convert a Pillow image to an (H, W, 4) uint8 RGBA array."""
    return np.array(img.convert("RGBA"), dtype=np.uint8)


def bytes_to_bits(raw: bytes) -> np.ndarray:
    """
    Convert bytes to a flat uint8 array of bits, most significant bit first.
    """
    return np.unpackbits(np.frombuffer(raw, dtype=np.uint8))


def bits_to_bytes(bits: np.ndarray) -> bytes:
    """
    Pack a flat array of bits (MSB first) back into bytes.
    A trailing partial byte is dropped, never zero-padded.
    """
    usable = (len(bits) // 8) * 8
    return np.packbits(bits[:usable].astype(np.uint8)).tobytes()
