"""Command modules registered on the root ``specflow`` app."""

from specflow.cli.commands import orchestrate

__all__ = ["orchestrate"]
