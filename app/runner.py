"""Opus Convert Service - Encoder process runner.

Runs one external encoder invocation per EncodeJobSpec without blocking the
event loop, and converts every way the invocation can end into a JobOutcome.

Contract:
- run() never raises for encoder problems. Launch failure, nonzero exit status,
  timeout and publish I/O errors all become FAILED outcomes, distinguished only
  by the reason text.
- The encoder writes to {destination}.tmp. Only a zero exit status publishes the
  temp file at destination_path, so a file at destination_path is never a
  partial write from this runner.
- Cancellation (asyncio.CancelledError) kills the encoder, removes the temp file
  and propagates.

Dependencies:
- Requires opusenc (opus-tools) installed and in PATH
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from app.config import ENCODER_BINARY
from app.jobs import EncodeJobSpec, JobOutcome
from app.utils.atomic_io import publish_file, remove_quietly, temp_path_for

logger = logging.getLogger(__name__)

# Max stderr characters carried into a failure reason
STDERR_TAIL_CHARS = 200


class ProcessRunner(Protocol):
    """Launches one encode job and reports its outcome."""

    async def run(self, spec: EncodeJobSpec) -> JobOutcome: ...


def _stderr_tail(stderr: bytes | None) -> str:
    """Get the last non-empty stderr line, truncated."""
    if not stderr:
        return ""
    lines = [line.strip() for line in stderr.decode("utf-8", errors="replace").splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        return ""
    return lines[-1][-STDERR_TAIL_CHARS:]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class OpusEncRunner:
    """Runs `opusenc --bitrate {quality} {source} {destination}` per job.

    Args:
        binary: Encoder executable name or path.
        timeout_seconds: Optional per-process timeout; the process is killed on expiry.
        extra_args: Additional arguments inserted before the input path.
    """

    def __init__(
        self,
        binary: str = ENCODER_BINARY,
        timeout_seconds: float | None = None,
        extra_args: tuple[str, ...] = ("--quiet",),
    ):
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.extra_args = tuple(extra_args)

    def build_command(self, spec: EncodeJobSpec) -> list[str]:
        """Build the encoder argv for a job (output goes to the temp path)."""
        return [
            self.binary,
            "--bitrate",
            str(int(spec.quality)),
            *self.extra_args,
            str(spec.source_path),
            str(temp_path_for(spec.destination_path)),
        ]

    async def run(self, spec: EncodeJobSpec) -> JobOutcome:
        start = time.monotonic()
        temp_path = temp_path_for(spec.destination_path)
        cmd = self.build_command(spec)

        try:
            spec.destination_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return JobOutcome.failed(
                spec, f"cannot create output directory: {e}", duration_ms=_elapsed_ms(start)
            )

        logger.info("Starting encode: quality=%d output=%s", spec.quality, spec.destination_path)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return JobOutcome.failed(
                spec, f"encoder binary not found: {self.binary}", duration_ms=_elapsed_ms(start)
            )
        except OSError as e:
            return JobOutcome.failed(
                spec, f"failed to launch {self.binary}: {e}", duration_ms=_elapsed_ms(start)
            )

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError:
            await self._kill(proc)
            remove_quietly(temp_path)
            return JobOutcome.failed(
                spec,
                f"{self.binary} timed out after {self.timeout_seconds}s",
                duration_ms=_elapsed_ms(start),
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            remove_quietly(temp_path)
            logger.info("Encode cancelled: quality=%d", spec.quality)
            raise

        duration_ms = _elapsed_ms(start)

        if proc.returncode != 0:
            remove_quietly(temp_path)
            reason = f"{self.binary} exited with status {proc.returncode}"
            tail = _stderr_tail(stderr)
            if tail:
                reason = f"{reason}: {tail}"
            logger.warning("Encode failed: quality=%d reason=%s", spec.quality, reason)
            return JobOutcome.failed(
                spec, reason, returncode=proc.returncode, duration_ms=duration_ms
            )

        try:
            publish_file(temp_path, spec.destination_path)
        except OSError as e:
            remove_quietly(temp_path)
            return JobOutcome.failed(
                spec,
                f"failed to publish output: {e}",
                returncode=proc.returncode,
                duration_ms=duration_ms,
            )

        logger.info(
            "Encode completed: quality=%d output=%s duration_ms=%d",
            spec.quality,
            spec.destination_path,
            duration_ms,
        )
        return JobOutcome.success(spec, returncode=proc.returncode, duration_ms=duration_ms)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        """Kill an encoder process and reap it."""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
