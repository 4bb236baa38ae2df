"""Command-line interface for CivicEase."""

from civicease.cli.main import civicease

__all__ = ["civicease"]
