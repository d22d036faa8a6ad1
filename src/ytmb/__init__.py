"""ytmb keeps a local SQLite mirror of a YouTube Music library in sync."""

__version__ = "0.1.0"
