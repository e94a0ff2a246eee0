"""Rate-limited task queue that provisions and maintains Telegram neighbourhood chats."""

__version__ = "0.1.0"
