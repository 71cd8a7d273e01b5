"""Shared types, configuration and crypto helpers."""
