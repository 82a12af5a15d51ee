"""Specflow: autonomous, batched delivery of spec-driven projects."""

__version__ = "0.4.0"
