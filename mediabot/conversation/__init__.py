"""Conversation engine: the per-user purchase state machine."""
