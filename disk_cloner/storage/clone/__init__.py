"""Filesystem-aware partition cloning.

Strategies:
    - get_filesystem_tool(): Strategy registered for a filesystem type
    - describe_shrink(): Classify a destination smaller than its source

Copying:
    - block_copy(): dd in 1M blocks, retried once at 512K
    - run_checked_with_streaming_progress(): Run a copy tool with progress

Verification:
    - verify_uuid(): Compare and reapply filesystem UUIDs
    - verify_filesystem(): Size and read-only integrity check of a copy

Whole-disk operations (clone_disk, clone_disk_raw, clone) live in
``disk_cloner.storage.clone.operations``; they depend on the session
manager, which itself uses the streaming runner from this package.
"""

from .block_copy import block_copy, dd_command
from .command_runners import ProgressCallback, run_checked_with_streaming_progress
from .progress import format_eta, format_progress_lines, parse_progress_line
from .strategies import FilesystemTool, describe_shrink, get_filesystem_tool
from .verification import verify_filesystem, verify_uuid


__all__ = [
    "FilesystemTool",
    "ProgressCallback",
    "block_copy",
    "dd_command",
    "describe_shrink",
    "format_eta",
    "format_progress_lines",
    "get_filesystem_tool",
    "parse_progress_line",
    "run_checked_with_streaming_progress",
    "verify_filesystem",
    "verify_uuid",
]
