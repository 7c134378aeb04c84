"""Utility functions."""

from dxworker.utils.helpers import ensure_dir, safe_filename, timestamp, truncate_string

__all__ = ["ensure_dir", "safe_filename", "timestamp", "truncate_string"]
