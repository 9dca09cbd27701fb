"""Shared infrastructure: logging and job scheduling."""
