"""Host UI module."""
