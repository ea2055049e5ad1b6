"""filesync - keep a local directory and a hosted application's files in sync."""

__version__ = "0.1.0"
