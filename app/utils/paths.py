"""Opus Convert Service - Canonical path utilities.

Returns canonical Paths for encoder outputs. Does NOT create directories.
Directory creation is the responsibility of the calling code.
"""

from pathlib import Path, PurePath

from app.config import OUTPUT_DIR

# Container extension for every encoded variant
OUTPUT_EXTENSION = "opus"


def source_base_name(filename: str) -> str:
    """Get the base name of a source file without its last extension.

    Any directory component supplied by the client is discarded.

    Args:
        filename: Client-supplied filename (e.g., "track.wav").

    Returns:
        Base name (e.g., "track"). Falls back to "audio" for an empty stem.
    """
    # Treat backslashes as separators too (Windows clients)
    name = PurePath(filename.replace("\\", "/")).name
    return PurePath(name).stem or "audio"


def output_filename(source_name: str, quality: int) -> str:
    """Get the output filename for one encoded variant.

    Args:
        source_name: Source filename or base name (e.g., "track.wav").
        quality: Target bitrate in kbit/s.

    Returns:
        str: {source_base_name}-{quality}.opus
    """
    return f"{source_base_name(source_name)}-{int(quality)}.{OUTPUT_EXTENSION}"


def request_output_dir(request_id: str, output_dir: Path | None = None) -> Path:
    """Get the per-request output directory.

    Args:
        request_id: Unique conversion request identifier.
        output_dir: Output root (defaults to OUTPUT_DIR).

    Returns:
        Path: {output_dir}/{request_id}
    """
    return (output_dir or OUTPUT_DIR) / request_id


def resolve_output_file(relative_name: str, output_dir: Path | None = None) -> Path | None:
    """Resolve a client-supplied output name to a file under the output directory.

    Args:
        relative_name: Name relative to the output root (e.g., "{request_id}/track-160.opus").
        output_dir: Output root (defaults to OUTPUT_DIR).

    Returns:
        The resolved Path, or None if the name escapes the output root.
    """
    root = (output_dir or OUTPUT_DIR).resolve()
    candidate = (root / relative_name).resolve()
    if candidate == root or not candidate.is_relative_to(root):
        return None
    return candidate
