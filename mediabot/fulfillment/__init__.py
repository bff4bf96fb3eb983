"""Fulfillment: settle confirmed payments and deliver purchased content."""
