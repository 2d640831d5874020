"""Store-to-customer messaging: threads, unread accounting and live updates."""

__version__ = "0.1.0"
