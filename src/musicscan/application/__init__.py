"""Application layer - workers and services."""
