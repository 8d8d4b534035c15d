"""Opus Convert Service - Conversion service logic.

Turns one uploaded source file into one Opus variant per target quality:
1. Validate that exactly one readable source file was supplied
2. Build one EncodeJobSpec per quality under a per-request output directory
3. Run a single JobBatch and await its one resolution
4. Translate the resolution into a ConversionResult or a typed error

The caller sees exactly one result or one error per request. Individual job
completions never reach it; only the batch's resolution does.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from app.batch import JobBatch, spawn_background
from app.config import BATCH_TIMEOUT_SECONDS, OUTPUT_DIR, TARGET_QUALITIES, UPLOAD_TMP_DIR
from app.jobs import Quality, build_job_specs, coerce_quality
from app.runner import OpusEncRunner, ProcessRunner
from app.utils.atomic_io import atomic_stream_to_file, remove_quietly
from app.utils.paths import request_output_dir, source_base_name

if TYPE_CHECKING:
    from typing import BinaryIO

logger = logging.getLogger(__name__)


# --- Error Codes ---


class ConvertErrorCode(StrEnum):
    """Error codes for the convert operation."""

    INPUT_MISSING = "INPUT_MISSING"
    INPUT_UNREADABLE = "INPUT_UNREADABLE"
    ENCODE_PROCESS_FAILED = "ENCODE_PROCESS_FAILED"
    BATCH_TIMEOUT = "BATCH_TIMEOUT"


class ConversionError(Exception):
    """Base exception for conversion errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class InputMissingError(ConversionError):
    """No source file was supplied."""

    def __init__(self, message: str = "No file was uploaded."):
        super().__init__(ConvertErrorCode.INPUT_MISSING, message)


class InputUnreadableError(ConversionError):
    """Source file was supplied but cannot be read."""

    def __init__(self, reason: str):
        super().__init__(ConvertErrorCode.INPUT_UNREADABLE, f"Input file is unreadable: {reason}")


class EncodeProcessFailedError(ConversionError):
    """An encoder process failed (crash, missing binary or bad exit status)."""

    def __init__(self, quality: int | None, reason: str):
        self.quality = quality
        self.reason = reason
        label = f"{quality}kbps" if quality is not None else "batch"
        super().__init__(
            ConvertErrorCode.ENCODE_PROCESS_FAILED,
            f"Error during the conversion process ({label}): {reason}",
        )


class BatchTimeoutError(ConversionError):
    """The batch did not resolve before its deadline."""

    def __init__(self, timeout_seconds: float | None):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            ConvertErrorCode.BATCH_TIMEOUT,
            f"Conversion did not finish within {timeout_seconds}s",
        )


# --- Result Types ---


@dataclass
class ConversionResult:
    """Result of a successful conversion."""

    request_id: str
    source_name: str
    outputs: list[Path]

    def relative_outputs(self, output_root: Path) -> list[str]:
        """Output paths relative to the output root (as served under /output)."""
        return [path.relative_to(output_root).as_posix() for path in self.outputs]


# --- Conversion Service ---


def generate_request_id() -> str:
    """Generate a unique conversion request ID.

    Uses UUID4 for uniqueness. Format: uuid4 hex (32 chars).
    """
    return uuid.uuid4().hex


class ConversionService:
    """Fans one source file out to one encode per quality and joins the results.

    Args:
        runner: Runner used for every encode job.
        output_dir: Root directory for published outputs.
        qualities: Target bitrates, in launch order.
        timeout_seconds: Overall deadline per batch (None disables it).
        upload_dir: Spool directory for uploaded sources.
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        output_dir: str | Path = OUTPUT_DIR,
        qualities: Iterable[int] = TARGET_QUALITIES,
        timeout_seconds: float | None = BATCH_TIMEOUT_SECONDS,
        upload_dir: str | Path = UPLOAD_TMP_DIR,
    ):
        self.runner = runner or OpusEncRunner()
        self.output_dir = Path(output_dir)
        self.qualities: tuple[Quality, ...] = tuple(coerce_quality(q) for q in qualities)
        self.timeout_seconds = timeout_seconds
        self.upload_dir = Path(upload_dir)

    async def convert_upload(
        self,
        stream: BinaryIO | None,
        filename: str | None,
    ) -> ConversionResult:
        """Convert an uploaded file stream.

        The stream is spooled to a temp file first; the spool file is removed
        once every encoder of the batch has finished with it.

        Raises:
            InputMissingError: If no file (or an empty filename) was supplied.
            InputUnreadableError: If the stream cannot be read or spooled.
            EncodeProcessFailedError: If any encode failed.
            BatchTimeoutError: If the batch deadline expired.
        """
        if stream is None or not filename:
            raise InputMissingError()

        request_id = generate_request_id()
        suffix = Path(filename).suffix or ".bin"
        spool_path = self.upload_dir / f"{request_id}{suffix}"

        try:
            size = atomic_stream_to_file(stream, spool_path)
        except (OSError, ValueError) as e:
            remove_quietly(spool_path)
            raise InputUnreadableError(f"failed to store upload: {e}") from e

        if size == 0:
            remove_quietly(spool_path)
            raise InputUnreadableError("uploaded file is empty")

        logger.info(
            "Accepted upload request_id=%s filename=%s bytes=%d", request_id, filename, size
        )
        return await self.convert_file(
            spool_path,
            source_name=filename,
            request_id=request_id,
            remove_source=True,
        )

    async def convert_file(
        self,
        source_path: str | Path,
        source_name: str | None = None,
        request_id: str | None = None,
        remove_source: bool = False,
    ) -> ConversionResult:
        """Convert a local source file into every target quality.

        Args:
            source_path: Path to the source audio file.
            source_name: Client filename used to name outputs (defaults to source_path name).
            request_id: Per-request id; outputs go to {output_dir}/{request_id}/.
            remove_source: Delete source_path once the batch has fully finished.

        Raises:
            InputMissingError: If no source path was supplied.
            InputUnreadableError: If the source is not a readable regular file.
            EncodeProcessFailedError: If any encode failed.
            BatchTimeoutError: If the batch deadline expired.
        """
        if source_path is None or str(source_path) == "":
            raise InputMissingError()

        source_path = Path(source_path)
        source_name = source_name or source_path.name
        request_id = request_id or generate_request_id()

        try:
            self._check_readable(source_path)
            request_dir = request_output_dir(request_id, self.output_dir)
            specs = build_job_specs(
                source_path, request_dir, self.qualities, source_name=source_name
            )
            batch = JobBatch(
                specs, self.runner, timeout_seconds=self.timeout_seconds, batch_id=request_id
            )
        except BaseException:
            if remove_source:
                remove_quietly(source_path)
            raise

        try:
            result = await batch.run()
        finally:
            spawn_background(
                self._cleanup_after_close(batch, source_path if remove_source else None),
                name=f"cleanup-{request_id}",
            )

        if result.ok:
            logger.info(
                "Conversion completed request_id=%s outputs=%d", request_id, len(result.outputs)
            )
            return ConversionResult(
                request_id=request_id,
                source_name=source_base_name(source_name),
                outputs=list(result.outputs),
            )

        if result.timed_out:
            raise BatchTimeoutError(self.timeout_seconds)

        quality = int(result.failed_quality) if result.failed_quality is not None else None
        raise EncodeProcessFailedError(quality, result.reason or "encode failed")

    @staticmethod
    def _check_readable(source_path: Path) -> None:
        if not source_path.exists():
            raise InputUnreadableError(f"file not found: {source_path.name}")
        if not source_path.is_file():
            raise InputUnreadableError(f"not a regular file: {source_path.name}")
        if not os.access(source_path, os.R_OK):
            raise InputUnreadableError(f"permission denied: {source_path.name}")

    async def _cleanup_after_close(self, batch: JobBatch, spool_path: Path | None) -> None:
        """Remove request leftovers once no encoder is using them any more."""
        await batch.wait_closed()
        if spool_path is not None:
            remove_quietly(spool_path)
        result = batch.result
        if result is not None and not result.ok:
            request_dir = batch.jobs[0].destination_path.parent
            try:
                request_dir.rmdir()
            except OSError:
                # Not empty or already gone
                pass
