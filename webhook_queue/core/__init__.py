"""Core infrastructure: logging and error tracking."""
