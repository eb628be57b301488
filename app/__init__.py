"""Linkpulse: URL shortener with click analytics."""
