"""Opus Convert Service - Configuration constants.

Module-level configuration with environment overrides. No external config libraries.
All paths are relative to the repository root by default.
"""

import os
from pathlib import Path

# Repository root (parent of app/)
REPO_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = REPO_ROOT / "data"


def _get_path(env_name: str, default: Path) -> Path:
    """Get a directory path from environment or use default."""
    env_val = os.environ.get(env_name)
    if env_val:
        return Path(env_val)
    return default


def _get_positive_int(env_name: str, default: int) -> int:
    """Get a positive integer from environment or use default.

    Invalid or non-positive values fall back to the default.

    Returns:
        The configured integer.
    """
    env_val = os.environ.get(env_name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_list(env_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Get a comma-separated list from environment or use default."""
    env_val = os.environ.get(env_name)
    if env_val is None:
        return default
    return tuple(item.strip() for item in env_val.split(",") if item.strip())


def _get_qualities() -> tuple[int, ...]:
    """Get target bitrates (kbit/s) from CONVERT_QUALITIES or use default.

    Unparseable entries fall back to the default list as a whole.

    Returns:
        Tuple of target bitrates, in encode order.
    """
    raw = _get_list("CONVERT_QUALITIES", ())
    if not raw:
        return DEFAULT_TARGET_QUALITIES
    try:
        return tuple(int(item) for item in raw)
    except ValueError:
        return DEFAULT_TARGET_QUALITIES


# Published encoder outputs, served read-only under /output
OUTPUT_DIR = _get_path("CONVERT_OUTPUT_DIR", DATA_DIR / "output")

# Spool directory for uploaded source files
UPLOAD_TMP_DIR = _get_path("CONVERT_UPLOAD_TMP_DIR", DATA_DIR / "uploads")

# External encoder binary (must be on PATH unless absolute)
ENCODER_BINARY = os.environ.get("CONVERT_ENCODER_BINARY", "opusenc")

# Target bitrates per upload, highest first
DEFAULT_TARGET_QUALITIES = (320, 160, 80, 40)
TARGET_QUALITIES = _get_qualities()

# Overall deadline for one conversion batch
# Override with CONVERT_BATCH_TIMEOUT_SEC for testing
BATCH_TIMEOUT_SECONDS = _get_positive_int("CONVERT_BATCH_TIMEOUT_SEC", 600)

# Bearer token expected on protected routes
API_TOKEN = os.environ.get("CONVERT_API_TOKEN", "")

# Origins allowed to call the API from a browser
ALLOWED_ORIGINS = _get_list("CONVERT_ALLOWED_ORIGINS", ())

# Remote storage / account service
STORAGE_URL = os.environ.get("CONVERT_STORAGE_URL", "http://localhost:5050")
STORAGE_TOKEN = os.environ.get("CONVERT_STORAGE_TOKEN", "")
STORAGE_ADMIN_TOKEN = os.environ.get("CONVERT_STORAGE_ADMIN_TOKEN", "")
STORAGE_TIMEOUT_SECONDS = _get_positive_int("CONVERT_STORAGE_TIMEOUT_SEC", 30)

# PBKDF2 work factor for account seeds
HASH_ITERATIONS = _get_positive_int("CONVERT_HASH_ITERATIONS", 100_000)
