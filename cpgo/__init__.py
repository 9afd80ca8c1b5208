"""cpgo - keeps a PGO profile in a GitHub repository fresh via pull requests."""

__version__ = "0.1.0"
