"""Shared infrastructure: logging, database, errors."""
