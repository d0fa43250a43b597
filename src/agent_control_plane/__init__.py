"""Durable control plane for multi-stage agent tasks."""

__version__ = "0.1.0"
