"""
Tensor archive (.safetensors) header reader.

Layout:
    8-byte little-endian unsigned N | N bytes of JSON header | tensor data

The JSON header maps tensor names to dtype/shape/offset records, plus one
reserved key, "__metadata__", holding a flat string→string map (training
settings, model name, trigger words). Only that map is returned.

The header length is authoritative, so a truncated buffer asks for exactly
8 + N bytes — no safety margin needed.
"""

import json
import struct

from core.errors import MalformedContainerError
from core.format_handler import MAX_TENSOR_HEADER
from core.outcome import Complete, Failed, ParseOutcome, need
from core.utils import decode_text

LENGTH_PREFIX = 8
METADATA_KEY  = "__metadata__"


def parse_tensor_archive(data: bytes, total_length: int | None = None) -> ParseOutcome:
    size = len(data)
    if size < LENGTH_PREFIX:
        return need(LENGTH_PREFIX, size)

    header_len = struct.unpack("<Q", data[:LENGTH_PREFIX])[0]
    if header_len > MAX_TENSOR_HEADER:
        return Failed(MalformedContainerError(
            f"Tensor archive header length {header_len} exceeds "
            f"{MAX_TENSOR_HEADER} bytes."
        ))

    header_end = LENGTH_PREFIX + header_len
    if size < header_end:
        return need(header_end, size)

    try:
        header = json.loads(decode_text(data[LENGTH_PREFIX:header_end]))
    except json.JSONDecodeError as e:
        return Failed(MalformedContainerError(f"Tensor archive header is not JSON: {e}"))

    if not isinstance(header, dict):
        return Failed(MalformedContainerError(
            f"Tensor archive header is a {type(header).__name__}, expected an object."
        ))

    metadata = header.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        return Complete({})
    return Complete(dict(metadata))
