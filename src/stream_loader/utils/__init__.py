"""Shared utilities for stream-loader."""
