"""Bundled configuration data (model limits)."""
