"""Crash-tolerant document-to-markdown conversion pipeline."""

__version__ = "0.1.0"
