"""Differential sync of a Microsoft Graph calendar into a local SQLite store."""

__version__ = "0.1.0"
