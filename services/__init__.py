"""Shared services for docwatch."""
