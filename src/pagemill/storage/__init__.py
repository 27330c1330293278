"""Persistence helpers shared by the pipeline repository."""
