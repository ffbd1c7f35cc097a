"""Relay successful Skorozvon calls into Telegram chats."""

__version__ = "0.1.0"
