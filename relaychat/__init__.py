"""Multi-user line-oriented TCP chat server."""

__version__ = "0.1.0"
