"""Core infrastructure: settings, database, Redis, observability."""
