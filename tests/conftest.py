"""Shared pytest fixtures for Opus Convert Service tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.

Output and upload directories are redirected to a per-session temp directory
before any application module is imported, so tests never touch data/.
"""

import asyncio
import os
import shutil
import stat
import tempfile
import textwrap
import wave
from pathlib import Path

_SESSION_DIR = Path(tempfile.mkdtemp(prefix="opus-convert-tests-"))
os.environ["CONVERT_OUTPUT_DIR"] = str(_SESSION_DIR / "output")
os.environ["CONVERT_UPLOAD_TMP_DIR"] = str(_SESSION_DIR / "uploads")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.jobs import EncodeJobSpec, JobOutcome  # noqa: E402

TEST_API_TOKEN = "test-api-token"


@pytest.fixture(scope="session", autouse=True)
def _session_dir():
    """Remove the per-session data directory after the run."""
    yield _SESSION_DIR
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


# --- Runners ---


class InstantRunner:
    """Runner that finishes every job immediately.

    Args:
        failures: Mapping of quality -> failure reason. Other qualities succeed.
    """

    def __init__(self, failures: dict[int, str] | None = None):
        self.failures = failures or {}
        self.calls: list[EncodeJobSpec] = []

    async def run(self, spec: EncodeJobSpec) -> JobOutcome:
        self.calls.append(spec)
        reason = self.failures.get(int(spec.quality))
        if reason is not None:
            return JobOutcome.failed(spec, reason, returncode=1)
        spec.destination_path.parent.mkdir(parents=True, exist_ok=True)
        spec.destination_path.write_bytes(b"OggS" + bytes([int(spec.quality) % 256]))
        return JobOutcome.success(spec)


class GatedRunner(InstantRunner):
    """Runner whose jobs finish only when the test releases them.

    Each quality waits on its own asyncio.Event; release() sets it.
    """

    def __init__(self, failures: dict[int, str] | None = None):
        super().__init__(failures)
        self.gates: dict[int, asyncio.Event] = {}
        self.cancelled: list[int] = []

    def _gate(self, quality: int) -> asyncio.Event:
        if quality not in self.gates:
            self.gates[quality] = asyncio.Event()
        return self.gates[quality]

    def release(self, *qualities: int) -> None:
        for quality in qualities:
            self._gate(int(quality)).set()

    async def run(self, spec: EncodeJobSpec) -> JobOutcome:
        try:
            await self._gate(int(spec.quality)).wait()
        except asyncio.CancelledError:
            self.cancelled.append(int(spec.quality))
            raise
        return await super().run(spec)


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run for a few loop iterations."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# --- Encoder stand-in ---

FAKE_ENCODER_SCRIPT = textwrap.dedent(
    """\
    #!/bin/sh
    # Stand-in for: opusenc --bitrate N [--quiet] INPUT OUTPUT
    bitrate="$2"
    shift 2
    if [ "$1" = "--quiet" ]; then shift; fi
    input="$1"
    output="$2"

    if [ -n "$FAKE_OPUSENC_HANG" ]; then exec sleep 30; fi

    case ",$FAKE_OPUSENC_FAIL," in
      *",$bitrate,"*)
        if [ -n "$FAKE_OPUSENC_PARTIAL" ]; then printf 'partial' > "$output"; fi
        echo "Encoding aborted" >&2
        echo "fake failure at $bitrate" >&2
        exit 1
        ;;
    esac

    if [ -n "$FAKE_OPUSENC_SLEEP" ]; then sleep "$FAKE_OPUSENC_SLEEP"; fi

    cp "$input" "$output" || exit 3
    printf '%s' "$bitrate" >> "$output"
    """
)


@pytest.fixture
def fake_encoder(tmp_path, monkeypatch):
    """Write an executable opusenc stand-in and return its path.

    Behaviour is controlled through environment variables:
    - FAKE_OPUSENC_FAIL: comma-separated bitrates that exit with status 1
    - FAKE_OPUSENC_PARTIAL: write a partial output before failing
    - FAKE_OPUSENC_SLEEP: seconds succeeding bitrates sleep before encoding
    - FAKE_OPUSENC_HANG: never finish
    """
    for name in ("FAIL", "PARTIAL", "SLEEP", "HANG"):
        monkeypatch.delenv(f"FAKE_OPUSENC_{name}", raising=False)

    script = tmp_path / "bin" / "opusenc"
    script.parent.mkdir()
    script.write_text(FAKE_ENCODER_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


# --- Audio fixtures ---


@pytest.fixture
def sample_audio_file(tmp_path):
    """Create a sample WAV audio file for testing.

    Creates a minimal valid WAV file (1 second of silence, mono, 22050 Hz).

    Returns:
        Path: Path to the temporary WAV file.
    """
    path = tmp_path / "track.wav"
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(22050)
        # Write 1 second of silence (22050 samples * 2 bytes)
        wf.writeframes(b"\x00" * 22050 * 2)
    return path


# --- API fixtures ---


@pytest.fixture
def auth_headers(monkeypatch):
    """Configure the API token and return matching request headers."""
    monkeypatch.setattr("app.config.API_TOKEN", TEST_API_TOKEN)
    return {"Authorization": f"Bearer {TEST_API_TOKEN}"}


@pytest.fixture
def make_client(auth_headers):
    """Factory for a FastAPI test client bound to a given ConversionService.

    Dependency overrides are cleared after the test completes.
    """
    from services.convert_api.main import app, get_conversion_service

    clients = []

    def _make(service=None, overrides=None):
        if service is not None:
            app.dependency_overrides[get_conversion_service] = lambda: service
        for dependency, factory in (overrides or {}).items():
            app.dependency_overrides[dependency] = factory
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
    app.dependency_overrides.clear()


@pytest.fixture
def output_root():
    """The configured output root for this test session."""
    from app.config import OUTPUT_DIR

    return OUTPUT_DIR
