"""Asynchronous export jobs for a multi-tenant compliance application."""

__version__ = "1.0.0"
