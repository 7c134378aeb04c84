"""CLI module for dxworker."""
