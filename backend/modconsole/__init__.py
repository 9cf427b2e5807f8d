"""Moderation console backend."""
