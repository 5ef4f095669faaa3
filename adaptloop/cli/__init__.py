"""Command-line tools for AdaptLoop."""
