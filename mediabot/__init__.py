"""mediabot — Telegram storefront for movies and series paid via M-Pesa."""

__version__ = "0.3.0"
