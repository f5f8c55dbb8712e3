"""Lecture ingestion, review and quiz generation pipeline."""

__version__ = "0.1.0"
