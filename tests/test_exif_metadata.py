import io
import struct

import numpy as np
import piexif
import piexif.helper
from PIL import Image

from core.exif_metadata import (
    decode_user_comment,
    parse_avif,
    parse_jpeg,
    parse_webp,
    read_user_comment,
)
from core.format_handler import ContainerKind, sniff
from core.outcome import Complete, Failed, Incomplete
from core.parser import parse_metadata


PARAMS = "a lighthouse at dusk\nSteps: 30, Sampler: DPM++ 2M, CFG scale: 6.5, Seed: 99"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_rgb(h=64, w=64, fill=100) -> np.ndarray:
    return np.full((h, w, 3), fill, dtype=np.uint8)


def exif_with_comment(text: str, encoding: str = "unicode") -> bytes:
    comment = piexif.helper.UserComment.dump(text, encoding=encoding)
    return piexif.dump({"Exif": {piexif.ExifIFD.UserComment: comment}})


def encode(fmt: str, exif: bytes | None = None) -> bytes:
    buf = io.BytesIO()
    kwargs = {"exif": exif} if exif else {}
    Image.fromarray(make_rgb()).save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def box(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + kind + payload


def full_box(kind: bytes, version: int, payload: bytes) -> bytes:
    return box(kind, bytes([version, 0, 0, 0]) + payload)


def make_avif(exif: bytes, in_idat: bool = False, major: bytes = b"avif") -> bytes:
    """
    Minimal AVIF skeleton: ftyp, meta(iinf, iloc[, idat]), mdat.
    The Exif item is the 4-byte TIFF header offset followed by exif.
    """
    item = struct.pack(">I", 6) + exif   # piexif.dump output opens with Exif\0\0
    ftyp = box(b"ftyp", major + b"\x00" * 4 + b"mif1avif")
    infe = full_box(b"infe", 2, struct.pack(">HH", 1, 0) + b"Exif" + b"\x00")
    iinf = full_box(b"iinf", 0, struct.pack(">H", 1) + infe)

    def iloc(offset: int) -> bytes:
        if in_idat:
            entry = struct.pack(">HHHH", 1, 1, 0, 1) + struct.pack(">II", offset, len(item))
            return full_box(b"iloc", 1, bytes([0x44, 0x00]) + struct.pack(">H", 1) + entry)
        entry = struct.pack(">HHH", 1, 0, 1) + struct.pack(">II", offset, len(item))
        return full_box(b"iloc", 0, bytes([0x44, 0x00]) + struct.pack(">H", 1) + entry)

    if in_idat:
        meta = full_box(b"meta", 0, iinf + iloc(0) + box(b"idat", item))
        return ftyp + meta + box(b"mdat", b"\x00" * 64)

    meta_len = len(full_box(b"meta", 0, iinf + iloc(0)))
    item_at  = len(ftyp) + meta_len + 8
    meta = full_box(b"meta", 0, iinf + iloc(item_at))
    return ftyp + meta + box(b"mdat", item)


def assert_every_cut_is_incomplete_or_right(data: bytes, expected: dict) -> None:
    """A prefix may ask for more bytes, but must never settle on a wrong answer."""
    for n in range(16, len(data)):
        outcome = parse_metadata(data[:n])
        if isinstance(outcome, Complete):
            assert outcome.metadata == expected, n
        else:
            assert isinstance(outcome, Incomplete), n
            assert outcome.suggested_min_bytes > n, n


# ---------------------------------------------------------------------------
# Group 1: UserComment decoding
# ---------------------------------------------------------------------------

def test_user_comment_unicode_big_endian():
    raw = b"UNICODE\x00" + PARAMS.encode("utf-16-be")
    assert decode_user_comment(raw) == PARAMS


def test_user_comment_unicode_little_endian_guess():
    raw = b"UNICODE\x00" + PARAMS.encode("utf-16-le")
    assert decode_user_comment(raw) == PARAMS


def test_user_comment_unicode_bom():
    raw = b"UNICODE\x00" + b"\xff\xfe" + "星空".encode("utf-16-le")
    assert decode_user_comment(raw) == "星空"


def test_user_comment_ascii():
    assert decode_user_comment(b"ASCII\x00\x00\x00Steps: 20\x00\x00") == "Steps: 20"


def test_user_comment_jis_read_as_utf8():
    assert decode_user_comment(b"JIS\x00\x00\x00\x00\x00" + "桜".encode("utf-8")) == "桜"


def test_user_comment_undefined_prefix():
    assert decode_user_comment(b"\x00" * 8 + b"Steps: 12") == "Steps: 12"


def test_user_comment_undefined_empty():
    assert decode_user_comment(b"\x00" * 16) is None


def test_user_comment_shifted_prefix():
    raw = b"\x00" * 4 + b"ASCII\x00\x00\x00" + b"shifted"
    assert decode_user_comment(raw) == "shifted"


def test_user_comment_too_short():
    assert decode_user_comment(b"ASCII") is None


def test_user_comment_invalid_utf8_is_lossy():
    assert decode_user_comment(b"ASCII\x00\x00\x00ok \xff\xfe").startswith("ok ")


def test_read_user_comment_from_exif_block():
    assert read_user_comment(exif_with_comment(PARAMS)) == PARAMS


def test_read_user_comment_without_tag():
    assert read_user_comment(piexif.dump({"0th": {piexif.ImageIFD.Make: b"Cam"}})) is None


# ---------------------------------------------------------------------------
# Group 2: JPEG
# ---------------------------------------------------------------------------

def test_jpeg_user_comment():
    data = encode("JPEG", exif_with_comment(PARAMS))
    assert parse_jpeg(data) == Complete({"parameters": PARAMS})


def test_jpeg_ascii_user_comment():
    data = encode("JPEG", exif_with_comment("Steps: 8", encoding="ascii"))
    assert parse_jpeg(data).metadata == {"parameters": "Steps: 8"}


def test_jpeg_without_exif():
    assert parse_jpeg(encode("JPEG")) == Complete({})


def test_jpeg_com_segment():
    data = encode("JPEG")
    comment = b"made with a diffusion model"
    com = b"\xff\xfe" + struct.pack(">H", len(comment) + 2) + comment
    data = data[:2] + com + data[2:]
    assert parse_jpeg(data).metadata == {"Comment": "made with a diffusion model"}


def test_jpeg_truncated_inside_app1():
    data = encode("JPEG", exif_with_comment(PARAMS))
    app1 = data.find(b"\xff\xe1")
    seg_len = struct.unpack(">H", data[app1 + 2:app1 + 4])[0]
    assert parse_jpeg(data[:app1 + 10]) == Incomplete(app1 + 2 + seg_len)


def test_jpeg_truncated_inside_marker():
    data = encode("JPEG")
    assert parse_jpeg(data[:3]) == Incomplete(6)


def test_jpeg_bad_marker_fails():
    data = b"\xff\xd8\x00\x00" + b"\x00" * 20
    assert isinstance(parse_jpeg(data), Failed)


def test_jpeg_through_parser_escalates_to_complete():
    data = encode("JPEG", exif_with_comment("x" * 30000))
    n = 16
    while True:
        outcome = parse_metadata(data[:n])
        if isinstance(outcome, Complete):
            break
        assert outcome.suggested_min_bytes > n
        n = outcome.suggested_min_bytes
    assert outcome.metadata == {"parameters": "x" * 30000}


# ---------------------------------------------------------------------------
# Group 3: WebP
# ---------------------------------------------------------------------------

def test_webp_exif_chunk():
    data = encode("WEBP", exif_with_comment(PARAMS))
    assert parse_webp(data) == Complete({"parameters": PARAMS})


def test_webp_simple_file_has_no_exif():
    vp8 = b"VP8 " + struct.pack("<I", 10) + b"\x00" * 10
    data = b"RIFF" + struct.pack("<I", 4 + len(vp8)) + b"WEBP" + vp8
    assert parse_webp(data) == Complete({})


def test_webp_truncated_extended_asks_for_whole_file():
    data = encode("WEBP", exif_with_comment(PARAMS))
    assert parse_webp(data[:40]) == Incomplete(len(data))


def test_webp_vp8x_without_exif_flag_stops_early():
    vp8x = b"VP8X" + struct.pack("<I", 10) + bytes([0x10]) + b"\x00" * 9
    alph = b"ALPH" + struct.pack("<I", 200_000)
    data = b"RIFF" + struct.pack("<I", 4 + len(vp8x) + 8 + 200_000) + b"WEBP" + vp8x + alph
    assert parse_webp(data[:30]) == Complete({})
    assert parse_webp(data + b"\x00" * 64) == Complete({})


def test_webp_truncated_header():
    assert parse_webp(b"RIFF\x00\x01\x00\x00WE") == Incomplete(12)


def test_webp_bad_riff_size_fails():
    assert isinstance(parse_webp(b"RIFF\x02\x00\x00\x00WEBP" + b"\x00" * 8), Failed)


# ---------------------------------------------------------------------------
# Group 4: AVIF
# ---------------------------------------------------------------------------

def test_avif_fixture_sniffs():
    assert sniff(make_avif(exif_with_comment(PARAMS))) == ContainerKind.AVIF


def test_avif_exif_item_in_mdat():
    data = make_avif(exif_with_comment(PARAMS))
    assert parse_avif(data) == Complete({"parameters": PARAMS})


def test_avif_exif_item_in_idat():
    data = make_avif(exif_with_comment(PARAMS), in_idat=True)
    assert parse_avif(data) == Complete({"parameters": PARAMS})


def test_avif_truncated_item_asks_for_extent_end():
    data = make_avif(exif_with_comment(PARAMS))
    assert parse_avif(data[:-5]) == Incomplete(len(data))


def test_avif_truncated_meta_asks_for_box_end():
    data = make_avif(exif_with_comment(PARAMS))
    meta_end = 24 + struct.unpack(">I", data[24:28])[0]
    assert parse_avif(data[:40]) == Incomplete(meta_end)


def test_avif_without_exif_item():
    ftyp = box(b"ftyp", b"avif" + b"\x00" * 4 + b"mif1")
    infe = full_box(b"infe", 2, struct.pack(">HH", 1, 0) + b"av01" + b"\x00")
    meta = full_box(b"meta", 0, full_box(b"iinf", 0, struct.pack(">H", 1) + infe))
    assert parse_avif(ftyp + meta) == Complete({})


def test_avif_through_parser():
    data = make_avif(exif_with_comment(PARAMS))
    assert parse_metadata(data, len(data)) == Complete({"parameters": PARAMS})


def test_avif_generic_major_brand_through_parser():
    data = make_avif(exif_with_comment(PARAMS), major=b"mif1")
    assert sniff(data) == ContainerKind.AVIF
    assert parse_metadata(data, len(data)) == Complete({"parameters": PARAMS})


def test_avif_generic_major_brand_cut_inside_ftyp_asks_for_box():
    data = make_avif(exif_with_comment(PARAMS), major=b"mif1")
    for n in range(16, 24):
        assert parse_metadata(data[:n]) == Incomplete(24), n


# ---------------------------------------------------------------------------
# Group 5: Truncation sweeps
# ---------------------------------------------------------------------------

def test_every_jpeg_cut_is_incomplete_or_right():
    data = encode("JPEG", exif_with_comment(PARAMS))
    assert_every_cut_is_incomplete_or_right(data, {"parameters": PARAMS})


def test_every_webp_cut_is_incomplete_or_right():
    data = encode("WEBP", exif_with_comment(PARAMS))
    assert_every_cut_is_incomplete_or_right(data, {"parameters": PARAMS})


def test_every_avif_cut_is_incomplete_or_right():
    for major in (b"avif", b"mif1"):
        for in_idat in (False, True):
            data = make_avif(exif_with_comment(PARAMS), in_idat=in_idat, major=major)
            assert_every_cut_is_incomplete_or_right(data, {"parameters": PARAMS})
