"""Procedo - procedural-order intake and AI recommendation service."""

__version__ = "1.0.0"
