"""Completion detection and team health."""
