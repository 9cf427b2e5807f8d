"""Moderation background workers."""
