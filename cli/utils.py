"""Utility functions for CLI operations."""

import sys

from cli.constants import GREEN, RESET, STATUS_LABELS, YELLOW
from common.types import TransferProgress


class ProgressPrinter:
    """Progress callback that renders transfer progress on one stdout line."""

    def __init__(self, verb: str, filename: str):
        """
        Initialize the progress printer.

        Args:
            verb: Leading word of the line ("Sending", "Receiving")
            filename: Display name for the file
        """
        self.verb = verb
        self.filename = filename
        self._last_percent = -1
        self._open_line = False

    def __call__(self, progress: TransferProgress) -> None:
        percent = progress.percent
        if percent == self._last_percent:
            return
        self._last_percent = percent
        loaded_str = format_file_size(progress.loaded)
        total_str = format_file_size(progress.total)
        sys.stdout.write(
            f"\r{self.verb} {self.filename}: {loaded_str} / {total_str} ({GREEN}{percent}%{RESET})"
        )
        sys.stdout.flush()
        self._open_line = True

    def status(self, status: str) -> None:
        """Print a transport change (fallback reason, relay start) on its own line."""
        self.finish()
        self._last_percent = -1
        if status.startswith("fallback:"):
            message = f"Direct connection unavailable ({status.split(':', 1)[1]})"
        else:
            message = STATUS_LABELS.get(status, status)
        sys.stdout.write(f"{YELLOW}{message}{RESET}\n")
        sys.stdout.flush()

    def finish(self) -> None:
        """Terminate the progress line with a newline."""
        if self._open_line:
            sys.stdout.write('\n')
            sys.stdout.flush()
            self._open_line = False


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in bytes to human-readable format with appropriate unit.

    Uses binary units (1024-based) and automatically selects the most
    appropriate unit (B, KiB, MiB, GiB, TiB).

    Args:
        size_bytes: File size in bytes

    Returns:
        Formatted string with size and unit (e.g., "1.50 MiB", "512 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"

    units = ['KiB', 'MiB', 'GiB', 'TiB']
    size = size_bytes / 1024.0

    for unit in units:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0

    return f"{size:.2f} PiB"
