"""Progress parsing and formatting for long-running copy tools."""

from __future__ import annotations

import re
from typing import Optional

from disk_cloner.storage.devices import human_size


BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
PERCENT_PATTERN = re.compile(r"\(?(\d+(?:\.\d+)?)/100%\)?|(\d+(?:\.\d+)?)%")
RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([KMG])B/s")

_RATE_UNITS = {"K": 1000, "M": 1000**2, "G": 1000**3}


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_progress_line(line: str) -> tuple[Optional[int], Optional[float], Optional[float]]:
    """Extract (bytes_copied, percent, rate_bytes_per_second) from a tool line.

    Understands dd ``status=progress``, ``qemu-img convert -p`` and
    ``e2image -p`` output. Missing values are None.
    """
    bytes_copied = None
    percent = None
    rate = None
    bytes_match = BYTES_PATTERN.search(line)
    if bytes_match:
        bytes_copied = int(bytes_match.group(1))
    percent_match = PERCENT_PATTERN.search(line)
    if percent_match:
        percent = float(percent_match.group(1) or percent_match.group(2))
    rate_match = RATE_PATTERN.search(line)
    if rate_match:
        rate = float(rate_match.group(1)) * _RATE_UNITS[rate_match.group(2)]
    return bytes_copied, percent, rate


def format_progress_lines(title, bytes_copied, total_bytes, percent, rate, eta):
    """Format progress information into short status lines."""
    lines = []
    if title:
        lines.append(title)
    if bytes_copied is not None:
        written_line = f"Wrote {human_size(bytes_copied)}"
        if total_bytes:
            written_line = f"{written_line} {(bytes_copied / total_bytes) * 100:.1f}%"
        lines.append(written_line)
    elif percent is not None:
        lines.append(f"{percent:.1f}%")
    else:
        lines.append("Working...")
    if rate:
        rate_line = f"{human_size(rate)}/s"
        if eta:
            rate_line = f"{rate_line} ETA {eta}"
        lines.append(rate_line)
    return lines
