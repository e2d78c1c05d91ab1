"""Command line interface for stream-loader."""
