"""Shared constants, models and settings."""
