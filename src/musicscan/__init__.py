"""MusicScan - batch queue for AI content generation."""

__version__ = "1.0.0"
