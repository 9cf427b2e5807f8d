"""Periodic moderation jobs."""
