"""Opus Convert Service - Atomic I/O utilities.

Implements the atomic publish rule for encoder outputs:
1. The encoder writes to a temp path in the same directory
2. Rename temp -> final (the publish boundary)
3. Best-effort fsync on the directory

This ensures that a final output path either contains a complete file
or does not exist. Partial writes only affect the temp file.
"""

import os
from pathlib import Path

TEMP_SUFFIX = ".tmp"


def temp_path_for(final_path: str | Path, temp_suffix: str = TEMP_SUFFIX) -> Path:
    """Get the temp path that sits next to a final path.

    Args:
        final_path: The target path for the final file.
        temp_suffix: Suffix for the temporary file (default: ".tmp").

    Returns:
        Path: {final_path}{temp_suffix}
    """
    final_path = Path(final_path)
    return final_path.with_suffix(final_path.suffix + temp_suffix)


def _write_all(fd: int, data: bytes) -> None:
    """Write all bytes to a file descriptor, handling partial writes.

    Raises:
        OSError: If write fails or returns 0 bytes unexpectedly.
    """
    total_written = 0
    data_len = len(data)

    while total_written < data_len:
        try:
            written = os.write(fd, data[total_written:])
            if written == 0:
                raise OSError("os.write() returned 0 bytes unexpectedly")
            total_written += written
        except InterruptedError:
            continue


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory.

    Silently ignores errors as this is best-effort.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY may not be available on all platforms
        pass


def publish_file(temp_path: str | Path, final_path: str | Path) -> None:
    """Atomically publish a completed temp file at its final path.

    Args:
        temp_path: Fully written temp file.
        final_path: Target path for the published file.

    Raises:
        FileNotFoundError: If the temp file does not exist.
        OSError: If the rename fails.
    """
    final_path = Path(final_path)
    os.replace(temp_path, final_path)
    _fsync_directory(final_path.parent)


def atomic_stream_to_file(
    stream,
    final_path: str | Path,
    temp_suffix: str = TEMP_SUFFIX,
    chunk_size: int = 65536,
) -> int:
    """Atomically write a stream to a file.

    Used to spool uploaded sources before encoding.

    Args:
        stream: File-like object with read() method.
        final_path: Target path for the output file.
        temp_suffix: Suffix for the temporary file (default: ".tmp").
        chunk_size: Buffer size for reading (default: 64KB).

    Returns:
        Total bytes written.

    Raises:
        OSError: If write or rename fails.
        Exception: Anything the stream raises is re-raised after the temp
            file is removed; the final path is never touched.
    """
    final_path = Path(final_path)
    temp_path = temp_path_for(final_path, temp_suffix)

    final_path.parent.mkdir(parents=True, exist_ok=True)

    total_bytes = 0
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        try:
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                _write_all(fd, chunk)
                total_bytes += len(chunk)

            os.fsync(fd)
        finally:
            os.close(fd)
        publish_file(temp_path, final_path)
    except BaseException:
        # Whatever the stream raised, only the temp file was touched
        remove_quietly(temp_path)
        raise

    return total_bytes


def remove_quietly(path: str | Path) -> bool:
    """Remove a file if present, ignoring errors.

    Returns:
        True if a file was removed.
    """
    try:
        os.remove(path)
        return True
    except OSError:
        return False


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = TEMP_SUFFIX) -> int:
    """Clean up orphan temp files in a directory and its subdirectories.

    Called during startup to remove incomplete encoder writes.

    Args:
        directory: Directory to scan for temp files.
        temp_suffix: Suffix pattern to match (default: ".tmp").

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    removed = 0

    if not directory.exists():
        return 0

    for temp_file in directory.rglob(f"*{temp_suffix}"):
        if temp_file.is_file() and remove_quietly(temp_file):
            removed += 1

    return removed
