#!/usr/bin/env python3
"""
Rewrite GLB assets so every texture is an inline data URI.

Some loaders (and pages running under a strict Content-Security-Policy) cannot
create blob: URLs for textures stored in the GLB BIN chunk. This tool moves
each ``bufferView`` image into its ``uri`` as ``data:<mime>;base64,...`` and
writes a new GLB; the BIN chunk is copied through unchanged.

Behavior:
- Inputs can be `.glb` files, directories (searched recursively) or http(s) URLs.
- Outputs go to `inlined/...` by default, keeping the layout of directory inputs.
- Any parse/relocation error fails that file only; nothing is written for it.

Usage:
    python scripts/glb_inline/inline_glb_images.py assets/models --out-dir assets/inlined
    python scripts/glb_inline/inline_glb_images.py https://example.com/hero.glb --verbose
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from glb_container import GlbInlineError, parse_glb, serialize_glb
from image_relocator import (
    count_images,
    relocate_images,
    validate_images_self_contained,
    verify_inline_images,
)

DEFAULT_OUT_DIR = "inlined"
DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass
class InlineResult:
    output: bytes
    version: int
    images_inlined: int = 0
    images_kept: int = 0


@dataclass
class FileReport:
    source: str
    rel_glb: Path
    status: str = "pending"
    input_bytes: int = 0
    output_bytes: int = 0
    images_inlined: int = 0
    images_kept: int = 0
    notes: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    files_total: int = 0
    files_ok: int = 0
    files_failed: int = 0
    files_skipped_existing: int = 0
    images_inlined: int = 0


class FetchError(RuntimeError):
    pass


def inline_images(data: bytes, strict_binary_chunk: bool = True) -> InlineResult:
    container = parse_glb(data, strict_binary_chunk=strict_binary_chunk)
    before = count_images(container.document)
    document = relocate_images(container.document, container.binary_chunk)
    binary_bytes = container.binary_chunk.data if container.binary_chunk is not None else b""
    output = serialize_glb(document, binary_bytes, version=container.version)
    return InlineResult(
        output=output,
        version=container.version,
        images_inlined=before.buffer_view,
        images_kept=before.uri,
    )


def transform(data: bytes, strict_binary_chunk: bool = True) -> bytes:
    return inline_images(data, strict_binary_chunk=strict_binary_chunk).output


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inline GLB textures stored in bufferViews as base64 data URIs.",
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        help="GLB files, directories containing GLB assets, or http(s) URLs.",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path(os.getenv("GLB_INLINE_OUT_DIR") or DEFAULT_OUT_DIR),
        help="Directory for rewritten GLBs. Defaults to GLB_INLINE_OUT_DIR or ./inlined.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=os.getenv("GLB_INLINE_TIMEOUT") or DEFAULT_TIMEOUT_SECONDS,
        help="Timeout for URL downloads in seconds. Defaults to GLB_INLINE_TIMEOUT or 60.",
    )
    parser.add_argument(
        "--lenient-bin-chunk",
        action="store_true",
        help="Do not validate the BIN chunk header (length/type) before reading image bytes.",
    )
    parser.add_argument(
        "--verify-images",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Decode inlined images with Pillow after rewriting (default: true).",
    )
    parser.add_argument(
        "--skip-existing",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Skip inputs whose output GLB already exists (default: false).",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a JSON run report to this path.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and count images without writing outputs.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    args = parser.parse_args(list(argv))

    if args.timeout_seconds <= 0:
        parser.error("--timeout-seconds must be > 0")

    return args


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def is_url(value: str) -> bool:
    return urlparse(value).scheme in {"http", "https"}


def rel_path_for_url(url: str) -> Path:
    name = Path(unquote(urlparse(url).path)).name
    if not name:
        return Path("download.glb")
    if not name.lower().endswith(".glb"):
        name = f"{name}.glb"
    return Path(name)


def fetch_glb(client: httpx.Client, url: str, timeout_seconds: float) -> bytes:
    try:
        response = client.get(url, timeout=httpx.Timeout(timeout_seconds), follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise FetchError(f"download failed: {exc}") from exc
    if response.status_code < 200 or response.status_code >= 300:
        raise FetchError(f"download returned HTTP {response.status_code}")
    return response.content


def collect_entries(inputs: Iterable[str]) -> Tuple[List[Tuple[str, Path]], List[str]]:
    """Expand inputs into ``(source, relative output path)`` pairs.

    Returns the entries plus a list of inputs that could not be used.
    """
    entries: List[Tuple[str, Path]] = []
    invalid: List[str] = []

    for raw in inputs:
        if is_url(raw):
            entries.append((raw, rel_path_for_url(raw)))
            continue

        path = Path(raw).resolve()
        if path.is_file():
            if path.suffix.lower() != ".glb":
                invalid.append(f"Input file must be a .glb: {path}")
                continue
            entries.append((str(path), Path(path.name)))
        elif path.is_dir():
            glb_files = sorted(path.rglob("*.glb"), key=lambda p: p.as_posix().lower())
            for glb_path in glb_files:
                entries.append((str(glb_path), glb_path.relative_to(path)))
        else:
            invalid.append(f"Input path does not exist: {path}")

    return entries, invalid


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def process_glb(
    source: str,
    rel_glb: Path,
    args: argparse.Namespace,
    client: Optional[httpx.Client],
) -> FileReport:
    report = FileReport(source=source, rel_glb=rel_glb)
    out_path = args.out_dir / rel_glb

    if args.skip_existing and not args.dry_run and out_path.exists():
        report.status = "skipped_existing"
        return report

    try:
        if is_url(source):
            if client is None:
                raise FetchError("no HTTP client available")
            data = fetch_glb(client, source, args.timeout_seconds)
        else:
            data = Path(source).read_bytes()
    except (FetchError, OSError) as exc:
        report.status = "failed"
        report.notes.append(str(exc))
        return report

    report.input_bytes = len(data)

    try:
        result = inline_images(data, strict_binary_chunk=not args.lenient_bin_chunk)
    except GlbInlineError as exc:
        report.status = "failed"
        report.notes.append(f"{type(exc).__name__}: {exc}")
        return report

    report.images_inlined = result.images_inlined
    report.images_kept = result.images_kept
    report.output_bytes = len(result.output)

    # Re-read what we are about to hand off, as a downstream loader would.
    rewritten = parse_glb(result.output, strict_binary_chunk=not args.lenient_bin_chunk)
    ok, reason = validate_images_self_contained(rewritten.document)
    if not ok:
        report.status = "failed"
        report.notes.append(f"output not self-contained: {reason}")
        return report
    if args.verify_images:
        report.notes.extend(verify_inline_images(rewritten.document))

    if args.dry_run:
        report.status = "dry_run"
        return report

    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(result.output)
    except OSError as exc:
        report.status = "failed"
        report.notes.append(f"cannot write {out_path}: {exc}")
        return report

    report.status = "ok"
    return report


def aggregate(run_report: RunReport, file_report: FileReport) -> None:
    run_report.files_total += 1
    if file_report.status == "skipped_existing":
        run_report.files_skipped_existing += 1
    elif file_report.status == "failed":
        run_report.files_failed += 1
    else:
        run_report.files_ok += 1
        run_report.images_inlined += file_report.images_inlined


def build_report_payload(run_report: RunReport, file_reports: List[FileReport]) -> Dict[str, Any]:
    return {
        "summary": {
            "files_total": run_report.files_total,
            "files_ok": run_report.files_ok,
            "files_failed": run_report.files_failed,
            "files_skipped_existing": run_report.files_skipped_existing,
            "images_inlined": run_report.images_inlined,
        },
        "files": [
            {
                "source": report.source,
                "output": report.rel_glb.as_posix(),
                "status": report.status,
                "input_bytes": report.input_bytes,
                "output_bytes": report.output_bytes,
                "images_inlined": report.images_inlined,
                "images_kept": report.images_kept,
                "notes": report.notes,
            }
            for report in file_reports
        ],
    }


def main(argv: Iterable[str]) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    entries, invalid = collect_entries(args.inputs)
    for message in invalid:
        logging.error(message)
    if invalid:
        return 2

    if not entries:
        logging.warning("No .glb files found under provided inputs")
        return 0

    args.out_dir = args.out_dir.resolve()
    logging.info("Out dir: %s", args.out_dir)
    logging.info("Found %d GLB input(s)", len(entries))
    if args.dry_run:
        logging.info("Running in dry-run mode (no writes)")

    run_report = RunReport()
    file_reports: List[FileReport] = []

    def run_processing_loop(client: Optional[httpx.Client]) -> None:
        for source, rel_glb in entries:
            logging.info("Processing %s", source)
            report = process_glb(source, rel_glb, args, client)
            aggregate(run_report, report)
            file_reports.append(report)

            if report.status == "failed":
                logging.error("%s: failed (%s)", rel_glb.as_posix(), "; ".join(report.notes) or "unknown")
            elif report.status == "skipped_existing":
                logging.info("%s: skipped (existing output)", rel_glb.as_posix())
            else:
                logging.info(
                    "%s: %s (%d inlined, %d kept, %d -> %d bytes)",
                    rel_glb.as_posix(),
                    report.status,
                    report.images_inlined,
                    report.images_kept,
                    report.input_bytes,
                    report.output_bytes,
                )
                for note in report.notes:
                    logging.warning("%s: %s", rel_glb.as_posix(), note)

    if any(is_url(source) for source, _ in entries):
        with httpx.Client() as client:
            run_processing_loop(client)
    else:
        run_processing_loop(None)

    if args.report is not None:
        write_json(args.report, build_report_payload(run_report, file_reports))
        logging.info("Report: %s", args.report)

    logging.info("---- Summary ----")
    logging.info("Files: %d total | %d ok | %d failed", run_report.files_total, run_report.files_ok, run_report.files_failed)
    logging.info("Skipped existing: %d", run_report.files_skipped_existing)
    logging.info("Images inlined: %d", run_report.images_inlined)

    return 1 if run_report.files_failed else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
