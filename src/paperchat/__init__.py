"""Per-document assistant chat sessions with streaming replies and durable history."""

__version__ = "0.1.0"
