"""Sermon preparation service: series composition and back-reference sync."""

__version__ = "0.1.0"
