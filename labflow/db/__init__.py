"""Database layer for Labflow."""
