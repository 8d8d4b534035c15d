#!/usr/bin/env python3
"""Convert a local audio file into every target Opus bitrate.

Runs the same fan-out/join conversion as POST /convert, without the HTTP layer.
Outputs are written to {output}/{request_id}/{base}-{quality}.opus and listed on
stdout, one per line. Exit status is 0 only if every encode succeeded.

Example:
    python scripts/convert_file.py track.wav --qualities 160,80 --timeout 120
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path

from app.config import BATCH_TIMEOUT_SECONDS, ENCODER_BINARY, OUTPUT_DIR, TARGET_QUALITIES
from app.jobs import UnsupportedQualityError
from app.runner import OpusEncRunner
from services.convert_api.service import ConversionError, ConversionService


def parse_qualities(text: str) -> tuple[int, ...]:
    try:
        return tuple(int(item) for item in text.split(",") if item.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid quality list: {text!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encode one audio file at every target bitrate")
    parser.add_argument("source", type=Path, help="Source audio file")
    parser.add_argument(
        "--output",
        type=Path,
        default=OUTPUT_DIR,
        help=f"Output root directory (default: {OUTPUT_DIR})",
    )
    parser.add_argument(
        "--qualities",
        type=parse_qualities,
        default=TARGET_QUALITIES,
        help="Comma-separated bitrates in kbit/s (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=BATCH_TIMEOUT_SECONDS,
        help="Overall deadline in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--encoder",
        default=ENCODER_BINARY,
        help="Encoder binary (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log job lifecycle")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if shutil.which(args.encoder) is None and not Path(args.encoder).is_file():
        print(f"Encoder not found: {args.encoder}", file=sys.stderr)
        return 1

    try:
        service = ConversionService(
            runner=OpusEncRunner(binary=args.encoder),
            output_dir=args.output,
            qualities=args.qualities,
            timeout_seconds=args.timeout,
        )
    except UnsupportedQualityError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    try:
        result = asyncio.run(service.convert_file(args.source))
    except ConversionError as exc:
        print(exc.message, file=sys.stderr)
        return 1

    for path in result.outputs:
        print(path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
