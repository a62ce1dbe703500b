"""Asynchronous audit-event pipeline for the workforce platform."""

__version__ = "0.1.0"
