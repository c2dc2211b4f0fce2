"""Bundled queue applications."""
