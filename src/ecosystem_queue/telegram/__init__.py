"""Chat platform adapters and chat id resolution."""
