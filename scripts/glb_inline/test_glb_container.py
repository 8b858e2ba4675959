#!/usr/bin/env python3
import json
import struct
import unittest
from pathlib import Path
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import glb_container as container


def _build_glb(document, bin_payload=None, json_pad=b" ", bin_type=container.ChunkType.BIN, version=2) -> bytes:
    json_bytes = json.dumps(document, separators=(",", ":")).encode("utf-8")
    while len(json_bytes) % 4:
        json_bytes += json_pad
    body = struct.pack("<II", len(json_bytes), container.ChunkType.JSON) + json_bytes
    if bin_payload is not None:
        padded = bin_payload + b"\x00" * (container.align4(len(bin_payload)) - len(bin_payload))
        body += struct.pack("<II", len(padded), bin_type) + padded
    return struct.pack("<III", container.GLB_MAGIC, version, 12 + len(body)) + body


class ParseGlbTests(unittest.TestCase):
    def test_parses_header_json_and_binary_region(self) -> None:
        document = {"asset": {"version": "2.0"}}
        data = _build_glb(document, b"\x01\x02\x03\x04")

        parsed = container.parse_glb(data)

        self.assertEqual(parsed.magic, container.GLB_MAGIC)
        self.assertEqual(parsed.version, 2)
        self.assertEqual(parsed.declared_total_length, len(data))
        self.assertEqual(parsed.document, document)
        self.assertEqual(parsed.json_chunk.start, 20)
        self.assertEqual(parsed.json_chunk.length % 4, 0)
        self.assertIsNotNone(parsed.binary_chunk)
        self.assertEqual(parsed.binary_chunk.start, 20 + parsed.json_chunk.length)
        self.assertEqual(parsed.binary_chunk.end, len(data))
        self.assertEqual(parsed.binary_chunk.data, data[parsed.binary_chunk.start :])
        self.assertEqual(parsed.binary_chunk.read_payload(0, 4), b"\x01\x02\x03\x04")

    def test_json_only_container_has_no_binary_region(self) -> None:
        parsed = container.parse_glb(_build_glb({"asset": {"version": "2.0"}}))
        self.assertIsNone(parsed.binary_chunk)

    def test_zero_magic_raises_format_error(self) -> None:
        data = bytearray(_build_glb({"asset": {}}))
        struct.pack_into("<I", data, 0, 0)
        with self.assertRaises(container.FormatError):
            container.parse_glb(bytes(data))

    def test_short_buffer_raises_truncated(self) -> None:
        with self.assertRaises(container.TruncatedInputError):
            container.parse_glb(b"glTF\x02\x00")

    def test_declared_total_past_end_raises_truncated(self) -> None:
        data = _build_glb({"asset": {}})
        with self.assertRaises(container.TruncatedInputError):
            container.parse_glb(data[:-4])

    def test_trailing_bytes_raise_format_error(self) -> None:
        data = _build_glb({"asset": {}})
        with self.assertRaises(container.FormatError):
            container.parse_glb(data + b"\x00\x00\x00\x00")

    def test_json_chunk_length_past_end_raises_truncated(self) -> None:
        data = bytearray(_build_glb({"asset": {}}))
        struct.pack_into("<I", data, 12, 4096)
        with self.assertRaises(container.TruncatedInputError):
            container.parse_glb(bytes(data))

    def test_wrong_first_chunk_type_raises_chunk_type_error(self) -> None:
        data = bytearray(_build_glb({"asset": {}}))
        struct.pack_into("<I", data, 16, container.ChunkType.BIN)
        with self.assertRaises(container.ChunkTypeError):
            container.parse_glb(bytes(data))

    def test_invalid_json_raises_malformed(self) -> None:
        json_bytes = b"{not json}  "
        body = struct.pack("<II", len(json_bytes), container.ChunkType.JSON) + json_bytes
        data = struct.pack("<III", container.GLB_MAGIC, 2, 12 + len(body)) + body
        with self.assertRaises(container.MalformedJSONError):
            container.parse_glb(data)

    def test_non_object_json_root_raises_malformed(self) -> None:
        with self.assertRaises(container.MalformedJSONError):
            container.parse_glb(_build_glb([1, 2, 3]))

    def test_invalid_utf8_raises_malformed(self) -> None:
        json_bytes = b'{"a":"\xff"}'
        body = struct.pack("<II", len(json_bytes), container.ChunkType.JSON) + json_bytes
        data = struct.pack("<III", container.GLB_MAGIC, 2, 12 + len(body)) + body
        with self.assertRaises(container.MalformedJSONError):
            container.parse_glb(data)

    def test_nul_padded_json_is_accepted(self) -> None:
        parsed = container.parse_glb(_build_glb({"abc": 1}, json_pad=b"\x00"))
        self.assertEqual(parsed.document, {"abc": 1})

    def test_strict_mode_rejects_wrong_bin_chunk_type(self) -> None:
        data = _build_glb({"asset": {}}, b"\x00" * 4, bin_type=container.ChunkType.JSON)
        with self.assertRaises(container.ChunkTypeError):
            container.parse_glb(data)
        lenient = container.parse_glb(data, strict_binary_chunk=False)
        self.assertIsNotNone(lenient.binary_chunk)

    def test_strict_mode_rejects_overlong_bin_chunk(self) -> None:
        data = bytearray(_build_glb({"asset": {}}, b"\x00" * 4))
        parsed = container.parse_glb(bytes(data))
        struct.pack_into("<I", data, parsed.binary_chunk.start, 64)
        with self.assertRaises(container.TruncatedInputError):
            container.parse_glb(bytes(data))

    def test_strict_mode_rejects_region_shorter_than_header(self) -> None:
        json_only = _build_glb({"asset": {}})
        data = bytearray(json_only + b"\x00\x00\x00\x00")
        struct.pack_into("<I", data, 8, len(data))
        with self.assertRaises(container.TruncatedInputError):
            container.parse_glb(bytes(data))
        lenient = container.parse_glb(bytes(data), strict_binary_chunk=False)
        self.assertEqual(lenient.binary_chunk.payload_limit, 0)

    def test_non_v2_version_is_passed_through(self) -> None:
        parsed = container.parse_glb(_build_glb({"asset": {}}, version=3))
        self.assertEqual(parsed.version, 3)


class SerializeGlbTests(unittest.TestCase):
    def test_total_length_matches_and_json_is_aligned(self) -> None:
        for name in ("a", "ab", "abc", "abcd", "abcde"):
            with self.subTest(name=name):
                out = container.serialize_glb({"name": name}, b"")
                magic, version, total = struct.unpack_from("<III", out, 0)
                json_len, json_type = struct.unpack_from("<II", out, 12)
                self.assertEqual(magic, container.GLB_MAGIC)
                self.assertEqual(version, 2)
                self.assertEqual(total, len(out))
                self.assertEqual(json_len % 4, 0)
                self.assertEqual(json_type, container.ChunkType.JSON)
                self.assertEqual(len(out), 20 + json_len)

    def test_json_is_space_padded(self) -> None:
        out = container.serialize_glb({"a": 1})
        json_len = struct.unpack_from("<I", out, 12)[0]
        raw = out[20 : 20 + json_len]
        self.assertEqual(raw.rstrip(b" "), b'{"a":1}')
        self.assertEqual(raw, b'{"a":1} ')

    def test_binary_region_is_copied_verbatim(self) -> None:
        region = struct.pack("<II", 4, container.ChunkType.BIN) + b"\xde\xad\xbe\xef"
        out = container.serialize_glb({"asset": {"version": "2.0"}}, region, version=7)
        self.assertTrue(out.endswith(region))
        self.assertEqual(struct.unpack_from("<I", out, 4)[0], 7)
        self.assertEqual(struct.unpack_from("<I", out, 8)[0], len(out))

    def test_lone_surrogate_is_written_as_json_escape(self) -> None:
        json_bytes = b'{"nodes":[{"name":"\\ud800"}]}   '
        body = struct.pack("<II", len(json_bytes), container.ChunkType.JSON) + json_bytes
        data = struct.pack("<III", container.GLB_MAGIC, 2, 12 + len(body)) + body
        parsed = container.parse_glb(data)

        out = container.serialize_glb(parsed.document)

        self.assertEqual(struct.unpack_from("<I", out, 8)[0], len(out))
        self.assertIn(b"\\ud800", out)
        self.assertEqual(container.parse_glb(out).document, parsed.document)

    def test_output_parses_back(self) -> None:
        document = {"asset": {"version": "2.0"}, "name": "café"}
        region = struct.pack("<II", 4, container.ChunkType.BIN) + b"\x00\x01\x02\x03"
        parsed = container.parse_glb(container.serialize_glb(document, region))
        self.assertEqual(parsed.document, document)
        self.assertEqual(parsed.binary_chunk.data, region)


if __name__ == "__main__":
    unittest.main()
