"""Issue Bridge: mirror Notion issue databases into Discord channels."""

__version__ = "0.1.0"
