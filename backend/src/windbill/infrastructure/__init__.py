"""Persistence and file storage."""
