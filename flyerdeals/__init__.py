"""Grocery flyer ingestion: tiles in, deals out."""

__version__ = "0.1.0"
