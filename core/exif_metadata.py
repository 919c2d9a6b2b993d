"""
EXIF UserComment extraction for JPEG, WebP and AVIF containers.

A1111-style generators store their parameters in the EXIF UserComment tag
(0x9286). The three containers differ only in where the EXIF block lives:

    JPEG — APP1 segment with an "Exif\\0\\0" header
    WebP — RIFF 'EXIF' chunk
    AVIF — ISO-BMFF item of type 'Exif', located through meta/iinf/iloc

Each walker stops reading as early as possible and reports Incomplete when
the structure it needs runs past the end of the buffer. The TIFF structure
inside the EXIF block is read with piexif.
"""

import logging
import struct

import piexif

from core.errors import MalformedContainerError, TruncatedInputError
from core.outcome import Complete, Failed, ParseOutcome, need
from core.utils import decode_text, strip_nul

logger = logging.getLogger(__name__)

# Result key for the UserComment text — the same key A1111 uses in PNG tEXt
USER_COMMENT_KEY = "parameters"
# Result key for a JPEG COM segment
JPEG_COMMENT_KEY = "Comment"

EXIF_HEADER = b"Exif\x00\x00"
TIFF_MARKS  = (b"II", b"MM")

# 8-byte character code prefixes defined by the EXIF standard for UserComment
PREFIX_UNICODE = b"UNICODE\x00"
PREFIX_ASCII   = b"ASCII\x00\x00\x00"
PREFIX_JIS     = b"JIS\x00\x00\x00\x00\x00"
KNOWN_PREFIXES = (PREFIX_UNICODE, PREFIX_ASCII, PREFIX_JIS)


# ---------------------------------------------------------------------------
# UserComment decoding
# ---------------------------------------------------------------------------

def decode_user_comment(raw: bytes) -> str | None:
    """
    Decode an EXIF UserComment value using its 8-byte character code prefix.

    Some writers shift the prefix by four NUL bytes; that layout is accepted
    when a known prefix follows the padding.

    Returns:
        The comment text, or None if it is empty or too short to carry a
        prefix. Never raises — malformed text decodes lossily.
    """
    if len(raw) < 8:
        return None

    if len(raw) >= 12 and raw[:4] == b"\x00" * 4 and raw[4:12] in KNOWN_PREFIXES:
        prefix, body = raw[4:12], raw[12:]
    else:
        prefix, body = raw[:8], raw[8:]

    if prefix.startswith(b"UNICODE"):
        text = _decode_utf16(body)
    else:
        # ASCII, JIS (generators write UTF-8 here in practice),
        # undefined (all NUL) and unknown prefixes all decode as UTF-8
        text = decode_text(body)

    text = strip_nul(text)
    return text or None


def _decode_utf16(body: bytes) -> str:
    """
    Decode UTF-16 honouring a BOM when present. Without a BOM, guess the
    byte order from the first code unit: printable ASCII read as
    little-endian means the text is little-endian.
    """
    if len(body) < 2:
        return ""
    if body[:2] == b"\xfe\xff":
        return decode_text(body[2:], "utf-16-be")
    if body[:2] == b"\xff\xfe":
        return decode_text(body[2:], "utf-16-le")

    first_le = body[0] | (body[1] << 8)
    encoding = "utf-16-le" if 0x20 <= first_le <= 0x7E else "utf-16-be"
    return decode_text(body, encoding)


def read_user_comment(blob: bytes) -> str | None:
    """
    Read the UserComment tag from an EXIF block.

    Args:
        blob: TIFF-structured EXIF data, optionally preceded by "Exif\\0\\0"

    Returns:
        Decoded comment text, or None if absent or unreadable.
    """
    tiff = blob[len(EXIF_HEADER):] if blob.startswith(EXIF_HEADER) else blob
    if tiff[:2] not in TIFF_MARKS:
        return None

    try:
        exif_dict = piexif.load(tiff)
    except Exception as e:
        logger.debug("[PARSER] Unreadable EXIF block: %s", e)
        return None

    raw = exif_dict.get("Exif", {}).get(piexif.ExifIFD.UserComment)
    if not raw:
        return None
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return decode_user_comment(raw)


def _comment_map(blob: bytes) -> dict:
    comment = read_user_comment(blob)
    return {USER_COMMENT_KEY: comment} if comment else {}


# ---------------------------------------------------------------------------
# JPEG — marker segment walk
# ---------------------------------------------------------------------------

MARKER_SOS = 0xDA
MARKER_EOI = 0xD9
MARKER_APP1 = 0xE1
MARKER_COM = 0xFE
# Markers without a length field
STANDALONE_MARKERS = {0x01} | set(range(0xD0, 0xD8))


def parse_jpeg(data: bytes, total_length: int | None = None) -> ParseOutcome:
    """
    Walk JPEG marker segments up to the start of scan.

    All metadata segments precede SOS, so reaching it (or EOI) is a
    definitive answer.
    """
    size   = len(data)
    offset = 2  # past SOI
    found  = {}

    while True:
        if offset + 2 > size:
            return need(offset + 4, size)

        if data[offset] != 0xFF:
            return Failed(MalformedContainerError(
                f"Expected JPEG marker at offset {offset}, "
                f"found 0x{data[offset]:02X}."
            ))

        marker = data[offset + 1]
        if marker == 0xFF:
            # Fill byte before the real marker
            offset += 1
            continue
        if marker in STANDALONE_MARKERS:
            offset += 2
            continue
        if marker in (MARKER_SOS, MARKER_EOI):
            return Complete(found)

        if offset + 4 > size:
            return need(offset + 4, size)

        seg_len = struct.unpack(">H", data[offset + 2:offset + 4])[0]
        if seg_len < 2:
            return Failed(MalformedContainerError(
                f"JPEG segment at offset {offset} claims length {seg_len}."
            ))

        end = offset + 2 + seg_len
        if end > size:
            return need(end, size)

        payload = data[offset + 4:end]
        if marker == MARKER_APP1 and payload.startswith(EXIF_HEADER):
            found.update(_comment_map(payload))
        elif marker == MARKER_COM:
            comment = strip_nul(decode_text(payload))
            if comment:
                found[JPEG_COMMENT_KEY] = comment

        offset = end


# ---------------------------------------------------------------------------
# WebP — RIFF chunk walk
# ---------------------------------------------------------------------------

RIFF_HEADER_LEN = 12
VP8X_EXIF_FLAG  = 0x08


def parse_webp(data: bytes, total_length: int | None = None) -> ParseOutcome:
    """
    Walk the RIFF chunk list looking for an 'EXIF' chunk.

    Simple WebP files (a single VP8/VP8L chunk) cannot carry EXIF. Extended
    files announce EXIF in the VP8X flags (a clear flag ends the walk) and
    store it after the image data, so a truncated extended file asks for the
    whole RIFF body in one go.
    """
    size = len(data)
    if size < RIFF_HEADER_LEN:
        return need(RIFF_HEADER_LEN, size)

    riff_size = struct.unpack("<I", data[4:8])[0]
    if riff_size < 4:
        return Failed(MalformedContainerError(f"RIFF size {riff_size} is too small."))

    file_end      = 8 + riff_size
    offset        = RIFF_HEADER_LEN
    exif_expected = False

    while offset + 8 <= file_end:
        if offset + 8 > size:
            return need(file_end if exif_expected else offset + 8, size)

        fourcc, chunk_size = struct.unpack("<4sI", data[offset:offset + 8])
        payload_end = offset + 8 + chunk_size

        if fourcc == b"VP8X":
            if offset + 9 > size:
                return need(offset + 18, size)
            exif_expected = bool(data[offset + 8] & VP8X_EXIF_FLAG)
            if not exif_expected:
                return Complete({})

        elif fourcc in (b"VP8 ", b"VP8L") and offset == RIFF_HEADER_LEN:
            return Complete({})

        elif fourcc == b"EXIF":
            if payload_end > size:
                return need(payload_end, size)
            return Complete(_comment_map(data[offset + 8:payload_end]))

        # Chunks are padded to an even length
        offset = payload_end + (chunk_size & 1)

    return Complete({})


# ---------------------------------------------------------------------------
# AVIF — ISO-BMFF box walk
# ---------------------------------------------------------------------------

def parse_avif(data: bytes, total_length: int | None = None) -> ParseOutcome:
    """
    Walk top-level boxes to 'meta', resolve the 'Exif' item through
    iinf/iloc, then read the item's extents.
    """
    size     = len(data)
    complete = total_length is not None and size >= total_length
    offset   = 0

    while True:
        if offset + 8 > size:
            return Complete({}) if complete else need(offset + 8, size)

        box_size, box_type = struct.unpack(">I4s", data[offset:offset + 8])
        header = 8
        if box_size == 1:
            if offset + 16 > size:
                return need(offset + 16, size)
            box_size = struct.unpack(">Q", data[offset + 8:offset + 16])[0]
            header = 16
        elif box_size == 0:
            # Box runs to the end of the file
            if box_type != b"meta":
                return Complete({})
            if not complete:
                return need(size * 2, size)
            box_size = size - offset

        if box_size < header:
            return Failed(MalformedContainerError(
                f"ISO-BMFF box '{box_type!r}' at offset {offset} has size {box_size}."
            ))

        if box_type == b"meta":
            end = offset + box_size
            if end > size:
                return need(end, size)
            return _read_avif_meta(data, offset + header, end)

        offset += box_size


def _read_uint(data: bytes, pos: int, width: int, limit: int) -> int:
    """Read a big-endian unsigned integer of 0, 2, 4 or 8 bytes."""
    if width == 0:
        return 0
    if pos + width > len(data):
        raise TruncatedInputError(f"Field at offset {pos} runs past the buffer.", pos + width)
    if pos + width > limit:
        raise MalformedContainerError(f"Field at offset {pos} overruns its box.")
    return int.from_bytes(data[pos:pos + width], "big")


def _child_boxes(data: bytes, start: int, end: int):
    """Yield (type, body_start, box_end) for each child box in [start, end)."""
    pos = start
    while pos + 8 <= end:
        box_size, box_type = struct.unpack(">I4s", data[pos:pos + 8])
        header = 8
        if box_size == 1:
            box_size = _read_uint(data, pos + 8, 8, end)
            header = 16
        elif box_size == 0:
            box_size = end - pos
        if box_size < header or pos + box_size > end:
            raise MalformedContainerError(
                f"Child box '{box_type!r}' at offset {pos} overruns its parent."
            )
        yield box_type, pos + header, pos + box_size
        pos += box_size


def _read_avif_meta(data: bytes, start: int, end: int) -> ParseOutcome:
    body = start + 4  # meta is a full box: version + flags
    exif_id    = None
    iloc_range = None
    idat_start = None

    for box_type, box_body, box_end in _child_boxes(data, body, end):
        if box_type == b"iinf":
            exif_id = _find_exif_item(data, box_body, box_end)
        elif box_type == b"iloc":
            iloc_range = (box_body, box_end)
        elif box_type == b"idat":
            idat_start = box_body

    if exif_id is None or iloc_range is None:
        return Complete({})

    located = _locate_item(data, iloc_range[0], iloc_range[1], exif_id)
    if located is None:
        return Complete({})

    extents, method = located
    if method == 1:
        if idat_start is None:
            return Failed(MalformedContainerError("Exif item refers to a missing idat box."))
        base = idat_start
    elif method == 0:
        base = 0
    else:
        logger.debug("[PARSER] Unsupported iloc construction method %d", method)
        return Complete({})

    item = b""
    for extent_offset, extent_length in extents:
        if extent_length == 0:
            return Failed(MalformedContainerError("Open-ended Exif extent is not supported."))
        item_start = base + extent_offset
        item_end   = item_start + extent_length
        if item_end > len(data):
            return need(item_end, len(data))
        item += data[item_start:item_end]

    if len(item) < 4:
        return Complete({})

    # Exif items open with the offset of the TIFF header within the payload
    tiff_offset = struct.unpack(">I", item[:4])[0]
    return Complete(_comment_map(item[4 + tiff_offset:]))


def _find_exif_item(data: bytes, start: int, end: int) -> int | None:
    """Return the item ID of the first 'Exif' entry in an iinf box."""
    version = data[start]
    pos     = start + 4
    if version == 0:
        count = _read_uint(data, pos, 2, end)
        pos += 2
    else:
        count = _read_uint(data, pos, 4, end)
        pos += 4

    seen = 0
    for box_type, box_body, _box_end in _child_boxes(data, pos, end):
        if seen >= count:
            break
        seen += 1
        if box_type != b"infe":
            continue
        infe_version = data[box_body]
        p = box_body + 4
        if infe_version < 2:
            continue
        if infe_version == 2:
            item_id = _read_uint(data, p, 2, end)
            p += 2
        else:
            item_id = _read_uint(data, p, 4, end)
            p += 4
        p += 2  # item_protection_index
        if data[p:p + 4] == b"Exif":
            return item_id
    return None


def _locate_item(
    data   : bytes,
    start  : int,
    end    : int,
    item_id: int,
) -> tuple[list[tuple[int, int]], int] | None:
    """
    Find an item's extents in an iloc box.

    Returns:
        ([(offset, length), ...], construction_method) or None if the item
        is not listed.
    """
    version = data[start]
    p = start + 4
    if p + 2 > end:
        raise MalformedContainerError("iloc box is too short.")

    offset_size      = data[p] >> 4
    length_size      = data[p] & 0x0F
    base_offset_size = data[p + 1] >> 4
    index_size       = data[p + 1] & 0x0F if version in (1, 2) else 0
    p += 2

    id_width = 2 if version < 2 else 4
    count = _read_uint(data, p, id_width, end)
    p += id_width

    for _ in range(count):
        current_id = _read_uint(data, p, id_width, end)
        p += id_width

        method = 0
        if version in (1, 2):
            method = _read_uint(data, p, 2, end) & 0x0F
            p += 2
        p += 2  # data_reference_index

        base_offset = _read_uint(data, p, base_offset_size, end)
        p += base_offset_size

        extent_count = _read_uint(data, p, 2, end)
        p += 2

        extents = []
        for _ in range(extent_count):
            p += index_size
            extent_offset = _read_uint(data, p, offset_size, end)
            p += offset_size
            extent_length = _read_uint(data, p, length_size, end)
            p += length_size
            extents.append((base_offset + extent_offset, extent_length))

        if current_id == item_id:
            return extents, method

    return None
