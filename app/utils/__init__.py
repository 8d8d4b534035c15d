"""Opus Convert Service - Utility modules."""

from app.utils.atomic_io import (
    atomic_stream_to_file,
    cleanup_orphan_temp_files,
    publish_file,
    remove_quietly,
    temp_path_for,
)
from app.utils.hashing import hash_secret, verify_secret
from app.utils.paths import (
    output_filename,
    request_output_dir,
    resolve_output_file,
    source_base_name,
)

__all__ = [
    # atomic_io
    "atomic_stream_to_file",
    "cleanup_orphan_temp_files",
    "publish_file",
    "remove_quietly",
    "temp_path_for",
    # hashing
    "hash_secret",
    "verify_secret",
    # paths
    "output_filename",
    "request_output_dir",
    "resolve_output_file",
    "source_base_name",
]
