"""Shared file, process and settings helpers."""
