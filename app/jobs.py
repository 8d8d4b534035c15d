"""Opus Convert Service - Encode job definitions.

One EncodeJobSpec describes one (source, quality) encode. A conversion request
fans out into one spec per target quality; each spec maps to exactly one
encoder process and yields exactly one JobOutcome.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from pathlib import Path

from app.utils.paths import output_filename


class Quality(IntEnum):
    """Supported target bitrates in kbit/s."""

    KBPS_320 = 320
    KBPS_160 = 160
    KBPS_80 = 80
    KBPS_40 = 40


DEFAULT_QUALITIES: tuple[Quality, ...] = (
    Quality.KBPS_320,
    Quality.KBPS_160,
    Quality.KBPS_80,
    Quality.KBPS_40,
)


class UnsupportedQualityError(ValueError):
    """Requested bitrate is not one of the supported qualities."""

    def __init__(self, quality):
        self.quality = quality
        supported = ", ".join(str(int(q)) for q in Quality)
        super().__init__(f"Unsupported quality {quality!r} (supported: {supported})")


def coerce_quality(quality: int | Quality) -> Quality:
    """Convert a raw bitrate to a Quality.

    Raises:
        UnsupportedQualityError: If the bitrate is not supported.
    """
    try:
        return Quality(quality)
    except ValueError as e:
        raise UnsupportedQualityError(quality) from e


class JobStatus(StrEnum):
    """Terminal status of one encode job."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodeJobSpec:
    """Immutable description of one encode job."""

    source_path: Path
    quality: Quality
    destination_path: Path

    @classmethod
    def create(
        cls,
        source_path: str | Path,
        quality: int | Quality,
        output_dir: str | Path,
        source_name: str | None = None,
    ) -> EncodeJobSpec:
        """Build a spec with a deterministically named destination.

        Args:
            source_path: Path to the source audio file.
            quality: Target bitrate in kbit/s.
            output_dir: Directory the encoded file is written to.
            source_name: Client filename used for naming (defaults to source_path name).

        Raises:
            UnsupportedQualityError: If quality is not supported.
        """
        source_path = Path(source_path)
        quality = coerce_quality(quality)
        name = source_name or source_path.name
        return cls(
            source_path=source_path,
            quality=quality,
            destination_path=Path(output_dir) / output_filename(name, quality),
        )


@dataclass(frozen=True)
class JobOutcome:
    """Terminal result of one encode job."""

    spec: EncodeJobSpec
    status: JobStatus
    reason: str | None = None
    returncode: int | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.SUCCESS

    @classmethod
    def success(cls, spec: EncodeJobSpec, returncode: int = 0, duration_ms: int = 0) -> JobOutcome:
        return cls(
            spec=spec, status=JobStatus.SUCCESS, returncode=returncode, duration_ms=duration_ms
        )

    @classmethod
    def failed(
        cls,
        spec: EncodeJobSpec,
        reason: str,
        returncode: int | None = None,
        duration_ms: int = 0,
    ) -> JobOutcome:
        return cls(
            spec=spec,
            status=JobStatus.FAILED,
            reason=reason,
            returncode=returncode,
            duration_ms=duration_ms,
        )


def build_job_specs(
    source_path: str | Path,
    output_dir: str | Path,
    qualities: Iterable[int | Quality] = DEFAULT_QUALITIES,
    source_name: str | None = None,
) -> tuple[EncodeJobSpec, ...]:
    """Build one EncodeJobSpec per target quality.

    Args:
        source_path: Path to the source audio file. Must exist.
        output_dir: Directory for encoded outputs.
        qualities: Target bitrates, in launch order.
        source_name: Client filename used for naming outputs.

    Returns:
        Tuple of specs in the order of qualities.

    Raises:
        FileNotFoundError: If the source file does not exist.
        UnsupportedQualityError: If any quality is not supported.
        ValueError: If qualities is empty or contains duplicates.
    """
    source_path = Path(source_path)
    if not source_path.exists():
        raise FileNotFoundError(f"Source file not found: {source_path}")

    resolved = [coerce_quality(q) for q in qualities]
    if not resolved:
        raise ValueError("At least one target quality is required")
    if len(set(resolved)) != len(resolved):
        raise ValueError(f"Duplicate target qualities: {[int(q) for q in resolved]}")

    return tuple(
        EncodeJobSpec.create(source_path, quality, output_dir, source_name=source_name)
        for quality in resolved
    )
