"""Messaging channel protocol and the Telegram Bot API implementation."""
