"""Shared helpers: logging and the HTTP client."""
