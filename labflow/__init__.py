"""Labflow: laboratory equipment borrowing workflow service."""

__version__ = "0.1.0"
