"""Command-line host for the QQ Bot channel."""

from qqbot.cli.app import cli

__all__ = ["cli"]
