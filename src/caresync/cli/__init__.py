"""Command-line interface for caresync."""

from caresync.cli.main import app, main

__all__ = ["app", "main"]
