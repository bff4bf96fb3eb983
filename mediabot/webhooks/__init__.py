"""Inbound webhooks: Telegram updates and M-Pesa payment callbacks.

Each request is verified, deduplicated, and handed to the event router;
the HTTP response never waits for the conversation or delivery work.
"""
