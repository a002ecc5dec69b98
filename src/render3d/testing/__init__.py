"""Helpers for the test modules; not part of the installed package."""
