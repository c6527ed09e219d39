"""Studiolink: per-artist calendar linking, busy time and pricing for a booking studio."""

__version__ = "0.1.0"
