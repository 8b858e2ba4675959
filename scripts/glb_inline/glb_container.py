#!/usr/bin/env python3
"""
GLB container reading and writing.

Layout handled here:
- 12-byte header: magic, version, total length (little-endian uint32).
- JSON chunk: 8-byte header (length, type) + space-padded UTF-8 JSON.
- Optional BIN chunk, kept as an opaque region (header included) and copied
  back verbatim on serialize.
"""

from __future__ import annotations

import json
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

GLB_MAGIC = 0x46546C67  # "glTF"
GLB_VERSION = 2
GLB_HEADER_SIZE = 12
# Every chunk (JSON and BIN) starts with uint32 length + uint32 type.
# BIN payload addressing depends on skipping exactly this many bytes.
CHUNK_HEADER_SIZE = 8
JSON_CHUNK_START = GLB_HEADER_SIZE + CHUNK_HEADER_SIZE


class ChunkType(IntEnum):
    JSON = 0x4E4F534A
    BIN = 0x004E4942


class GlbInlineError(ValueError):
    """Base class for every failure raised while rewriting a GLB."""


class FormatError(GlbInlineError):
    pass


class ChunkTypeError(GlbInlineError):
    pass


class TruncatedInputError(GlbInlineError):
    pass


class MalformedJSONError(GlbInlineError):
    pass


class UnsupportedBufferError(GlbInlineError):
    pass


@dataclass
class JsonChunk:
    start: int
    length: int
    text: str
    document: Dict[str, Any]


@dataclass
class BinaryChunkRegion:
    """Raw bytes in ``[start, end)`` of the source buffer, BIN header included."""

    start: int
    end: int
    data: bytes
    payload_length: Optional[int] = None

    @property
    def payload_limit(self) -> int:
        # Bytes addressable after the chunk header, relative to the payload start.
        available = max(len(self.data) - CHUNK_HEADER_SIZE, 0)
        if self.payload_length is None:
            return available
        return min(self.payload_length, available)

    def read_payload(self, byte_offset: int, byte_length: int) -> bytes:
        if byte_offset + byte_length > self.payload_limit:
            raise TruncatedInputError(
                f"range [{byte_offset}, {byte_offset + byte_length}) exceeds BIN payload "
                f"of {self.payload_limit} bytes at offset {self.start + CHUNK_HEADER_SIZE}"
            )
        begin = CHUNK_HEADER_SIZE + byte_offset
        return self.data[begin : begin + byte_length]


@dataclass
class GLBContainer:
    magic: int
    version: int
    declared_total_length: int
    json_chunk: JsonChunk
    binary_chunk: Optional[BinaryChunkRegion] = None

    @property
    def document(self) -> Dict[str, Any]:
        return self.json_chunk.document


def align4(value: int) -> int:
    return (value + 3) & ~3


def _decode_json_chunk(raw: bytes) -> Tuple[str, Dict[str, Any]]:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedJSONError(f"JSON chunk is not valid UTF-8: {exc}") from exc

    try:
        document = json.loads(text.rstrip(" \t\r\n\x00"))
    except json.JSONDecodeError as exc:
        raise MalformedJSONError(f"JSON chunk does not parse: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedJSONError("GLB JSON root is not an object")
    return text, document


def _read_binary_chunk(
    data: bytes,
    start: int,
    end: int,
    strict: bool,
) -> BinaryChunkRegion:
    region = BinaryChunkRegion(start=start, end=end, data=bytes(data[start:end]))
    if not strict:
        return region

    if end - start < CHUNK_HEADER_SIZE:
        raise TruncatedInputError(
            f"BIN chunk region at offset {start} is {end - start} bytes, shorter than its header"
        )
    chunk_len, chunk_type = struct.unpack_from("<II", data, start)
    if chunk_type != ChunkType.BIN:
        raise ChunkTypeError(f"expected BIN chunk at offset {start}, found type 0x{chunk_type:08X}")
    if start + CHUNK_HEADER_SIZE + chunk_len > end:
        raise TruncatedInputError(
            f"BIN chunk declares {chunk_len} bytes but only {end - start - CHUNK_HEADER_SIZE} remain"
        )
    region.payload_length = chunk_len
    return region


def parse_glb(data: bytes, strict_binary_chunk: bool = True) -> GLBContainer:
    if len(data) < GLB_HEADER_SIZE:
        raise TruncatedInputError(f"GLB too small ({len(data)} bytes)")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise FormatError(f"invalid GLB magic: 0x{magic:08X}")
    if version != GLB_VERSION:
        logging.warning("GLB version %d is not %d, passing it through", version, GLB_VERSION)
    if total_length > len(data):
        raise TruncatedInputError(f"GLB declares {total_length} bytes but only {len(data)} supplied")
    if total_length < len(data):
        raise FormatError(f"GLB declares {total_length} bytes but {len(data)} supplied (trailing bytes)")
    if total_length < JSON_CHUNK_START:
        raise TruncatedInputError("GLB ends before the JSON chunk header")

    json_len, json_type = struct.unpack_from("<II", data, GLB_HEADER_SIZE)
    if json_type != ChunkType.JSON:
        raise ChunkTypeError(f"expected JSON chunk at offset {GLB_HEADER_SIZE}, found type 0x{json_type:08X}")

    binary_start = JSON_CHUNK_START + json_len
    if binary_start > total_length:
        raise TruncatedInputError(
            f"JSON chunk declares {json_len} bytes but only {total_length - JSON_CHUNK_START} remain"
        )

    text, document = _decode_json_chunk(data[JSON_CHUNK_START:binary_start])
    json_chunk = JsonChunk(start=JSON_CHUNK_START, length=json_len, text=text, document=document)

    binary_chunk = None
    if binary_start < total_length:
        binary_chunk = _read_binary_chunk(data, binary_start, total_length, strict_binary_chunk)

    return GLBContainer(
        magic=magic,
        version=version,
        declared_total_length=total_length,
        json_chunk=json_chunk,
        binary_chunk=binary_chunk,
    )


def serialize_glb(
    document: Dict[str, Any],
    binary_chunk_bytes: Optional[bytes] = None,
    version: int = GLB_VERSION,
) -> bytes:
    """Pack ``document`` and an already-framed BIN region into a GLB buffer.

    ``binary_chunk_bytes`` is written verbatim, including its own chunk header.
    """
    try:
        json_bytes = json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError:
        # Lone surrogates ("\ud800") parse from JSON escapes but have no UTF-8 form.
        json_bytes = json.dumps(document, separators=(",", ":")).encode("ascii")
    json_pad = align4(len(json_bytes)) - len(json_bytes)
    if json_pad:
        json_bytes += b" " * json_pad

    binary_chunk_bytes = binary_chunk_bytes or b""
    total_length = JSON_CHUNK_START + len(json_bytes) + len(binary_chunk_bytes)

    out = bytearray()
    out += struct.pack("<III", GLB_MAGIC, version, total_length)
    out += struct.pack("<II", len(json_bytes), ChunkType.JSON)
    out += json_bytes
    out += binary_chunk_bytes
    return bytes(out)
