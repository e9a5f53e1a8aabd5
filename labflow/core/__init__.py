"""Core workflow logic for Labflow."""
