"""Drive a coding agent through Markdown checkbox task lists."""

__version__ = "0.1.0"
