"""Asynchronous orchestration of long-running provider tasks."""

__version__ = "0.1.0"
