"""Eem command-line interface."""

from eem.cli.main import cli, main

__all__ = ["cli", "main"]
