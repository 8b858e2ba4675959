#!/usr/bin/env python3
"""
Move GLB images out of the BIN chunk and into inline data URIs.

Every ``images[i]`` that points at a ``bufferView`` is rewritten to
``{"uri": "data:<mime>;base64,<payload>"}`` (other keys such as ``name`` are
kept). The payload is read from the BIN region of the source container; the
region itself is never modified, so accessors that share it keep working.

Images that already have a ``uri`` keep it (a stray ``bufferView`` next to it is
dropped), which makes the rewrite safe to apply more than once.
"""

from __future__ import annotations

import base64
import copy
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from PIL import Image, UnidentifiedImageError

from glb_container import BinaryChunkRegion, TruncatedInputError, UnsupportedBufferError

DEFAULT_IMAGE_MIME = "image/png"


@dataclass
class ImageCounts:
    buffer_view: int = 0
    uri: int = 0
    data_uri: int = 0


IMAGE_SIGNATURES: Tuple[Tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


def detect_mime_from_image_bytes(data: bytes) -> Optional[str]:
    # WebP is a RIFF container; the format tag sits after the size field.
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for signature, mime in IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime
    return None


def encode_data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> Tuple[bytes, Optional[str]]:
    """Split ``data:[<mime>][;param...][;base64],<payload>`` into bytes and MIME type."""
    scheme, _, rest = uri.partition(":")
    if scheme.lower() != "data":
        raise ValueError("Not a data URI")
    meta, sep, payload = rest.partition(",")
    if not sep:
        raise ValueError("Invalid data URI")

    mime_part, *params = meta.split(";")
    mime = mime_part if "/" in mime_part else None
    if "base64" in (param.strip().lower() for param in params):
        return base64.b64decode(payload, validate=True), mime
    return unquote(payload).encode("utf-8"), mime


def count_images(document: Dict[str, Any]) -> ImageCounts:
    counts = ImageCounts()
    images = document.get("images")
    if not isinstance(images, list):
        return counts

    for image in images:
        if not isinstance(image, dict):
            continue
        uri = image.get("uri")
        if isinstance(uri, str):
            counts.uri += 1
            if uri.startswith("data:"):
                counts.data_uri += 1
        elif "bufferView" in image:
            counts.buffer_view += 1
    return counts


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _resolve_buffer_view(document: Dict[str, Any], image_index: int, view_index: Any) -> Tuple[int, int]:
    buffer_views = document.get("bufferViews")
    if not isinstance(buffer_views, list):
        raise UnsupportedBufferError(f"image[{image_index}] has a bufferView but the document has no bufferViews")
    if not _non_negative_int(view_index) or view_index >= len(buffer_views):
        raise UnsupportedBufferError(f"image[{image_index}] references invalid bufferView {view_index!r}")

    view = buffer_views[view_index]
    if not isinstance(view, dict):
        raise UnsupportedBufferError(f"bufferView[{view_index}] is not an object")
    if view.get("buffer") != 0:
        raise UnsupportedBufferError(
            f"bufferView[{view_index}] references buffer {view.get('buffer')!r}, only buffer 0 is embedded"
        )
    if "byteLength" not in view:
        raise UnsupportedBufferError(f"bufferView[{view_index}] has no byteLength")

    byte_offset = view.get("byteOffset", 0)
    byte_length = view["byteLength"]
    if not _non_negative_int(byte_offset) or not _non_negative_int(byte_length):
        raise UnsupportedBufferError(
            f"bufferView[{view_index}] has invalid byte range (offset={byte_offset!r}, length={byte_length!r})"
        )
    return byte_offset, byte_length


def _relocate_image(
    image: Dict[str, Any],
    image_index: int,
    document: Dict[str, Any],
    binary_chunk: Optional[BinaryChunkRegion],
) -> None:
    if binary_chunk is None:
        raise UnsupportedBufferError(f"image[{image_index}] references a bufferView but the GLB has no BIN chunk")

    byte_offset, byte_length = _resolve_buffer_view(document, image_index, image["bufferView"])
    try:
        blob = binary_chunk.read_payload(byte_offset, byte_length)
    except TruncatedInputError as exc:
        raise TruncatedInputError(f"image[{image_index}]: {exc}") from exc

    declared_mime = image.get("mimeType")
    mime = declared_mime if isinstance(declared_mime, str) and declared_mime else DEFAULT_IMAGE_MIME
    sniffed = detect_mime_from_image_bytes(blob)
    if sniffed is not None and sniffed != mime:
        logging.warning("image[%d]: declared %s but payload looks like %s", image_index, mime, sniffed)

    image["uri"] = encode_data_uri(blob, mime)
    image.pop("bufferView", None)
    image.pop("mimeType", None)
    logging.debug("image[%d]: inlined %d bytes as %s", image_index, byte_length, mime)


def relocate_images(
    document: Dict[str, Any],
    binary_chunk: Optional[BinaryChunkRegion],
) -> Dict[str, Any]:
    """Return a copy of ``document`` with every buffer-view image inlined.

    Raises ``UnsupportedBufferError`` or ``TruncatedInputError``; the input
    document is not modified either way.
    """
    images = document.get("images")
    if not isinstance(images, list) or not images:
        return copy.deepcopy(document)

    relocated = copy.deepcopy(document)
    for image_index, image in enumerate(relocated["images"]):
        if not isinstance(image, dict) or "bufferView" not in image:
            continue
        if "uri" in image:
            # An image is either uri- or bufferView-backed; the uri wins.
            logging.warning("image[%d] has both uri and bufferView, keeping the uri", image_index)
            image.pop("bufferView", None)
            image.pop("mimeType", None)
            continue
        _relocate_image(image, image_index, relocated, binary_chunk)
    return relocated


def validate_images_self_contained(document: Dict[str, Any]) -> Tuple[bool, str]:
    images = document.get("images")
    if not isinstance(images, list):
        return True, "no images"

    for idx, image in enumerate(images):
        if not isinstance(image, dict):
            return False, f"image[{idx}] is not an object"
        if "bufferView" in image:
            return False, f"image[{idx}] still references bufferView {image['bufferView']!r}"
        uri = image.get("uri")
        if not isinstance(uri, str) or not uri:
            return False, f"image[{idx}] missing uri"
        if uri.startswith("data:"):
            try:
                decode_data_uri(uri)
            except ValueError as exc:
                return False, f"image[{idx}] invalid data URI: {exc}"

    return True, "ok"


def verify_inline_images(document: Dict[str, Any]) -> List[str]:
    """Open every data-URI image with Pillow and return the problems found."""
    issues: List[str] = []
    images = document.get("images")
    if not isinstance(images, list):
        return issues

    for idx, image in enumerate(images):
        if not isinstance(image, dict):
            continue
        uri = image.get("uri")
        if not isinstance(uri, str) or not uri.startswith("data:"):
            continue
        try:
            blob, _mime = decode_data_uri(uri)
        except ValueError as exc:
            issues.append(f"image[{idx}] invalid data URI: {exc}")
            continue
        try:
            with Image.open(BytesIO(blob)) as img:
                width, height = img.size
                if width <= 0 or height <= 0:
                    issues.append(f"image[{idx}] zero dimensions ({width}x{height})")
                    continue
                img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
            issues.append(f"image[{idx}] not decodable: {exc}")
    return issues
