"""Trend detection and organization relevance scoring engine."""

__version__ = "0.4.0"
