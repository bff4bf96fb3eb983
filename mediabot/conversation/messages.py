"""User-facing message text.

Messages are sent as plain text (no parse mode), so titles with Markdown
characters need no escaping.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from mediabot.catalog.models import EpisodeRange, Movie, Series
from mediabot.channels.protocol import ReplyKeyboard
from mediabot.conversation.parsing import (
    HELP_BUTTON,
    MOVIES_BUTTON,
    SERIES_BUTTON,
    TRANSACTIONS_BUTTON,
)
from mediabot.ledger.models import Transaction

MAIN_MENU = ReplyKeyboard(rows=[
    [MOVIES_BUTTON, SERIES_BUTTON],
    [TRANSACTIONS_BUTTON, HELP_BUTTON],
])

HELP_TEXT = """Movie and Series Bot Help

This bot lets you browse and purchase movies and series.

Available commands:
/start - Start the bot and show the main menu
/movies - Browse available movies
/series - Browse available series
/transactions - View your recent transactions
/help - Show this help message

How to purchase a movie:
1. Use /movies
2. Enter the movie title
3. Tap Purchase under the movie you want
4. Enter your M-Pesa phone number (254XXXXXXXXX)
5. Complete the payment on your phone
6. Receive your movie

How to purchase a series:
1. Use /series
2. Enter the series title
3. Enter the episode range (e.g. 1-5)
4. Tap Purchase Available Episodes
5. Enter your M-Pesa phone number (254XXXXXXXXX)
6. Complete the payment on your phone
7. Receive your episodes"""

MOVIE_TITLE_PROMPT = "Please enter the title of the movie you are looking for:"
SERIES_TITLE_PROMPT = "Please enter the title of the series you are looking for:"
NO_MOVIES_FOUND = "Sorry, no movies found with that title. Please try again with a different title."
NO_SERIES_FOUND = "Sorry, no series found with that title. Please try again with a different title."
NO_EPISODES_IN_RANGE = "No episodes found in the specified range. Please try a different range."
MOVIE_UNAVAILABLE = "Sorry, this movie is no longer available."
SERIES_UNAVAILABLE = "Sorry, this series is no longer available."
STALE_BUTTON = "That button has expired. Please search again from the menu."
ACCOUNT_INACTIVE = "Sorry, there was an error with your account. Please restart the bot with /start"
PURCHASE_EXPIRED = "This purchase is no longer awaiting payment. Please start again from the menu."
NO_TRANSACTIONS = "You have no transactions yet. Use /movies or /series to browse content."
MENU_HINT = "Please use the menu buttons below or /help to see what I can do."
GENERIC_APOLOGY = "Sorry, an error occurred. Please try again later."
PAYMENT_REQUESTED = (
    "Payment request sent. Please complete the payment on your phone. "
    "You will receive your content after payment confirmation."
)
PURCHASE_BUTTON = "💳 Purchase"
PURCHASE_EPISODES_BUTTON = "💳 Purchase Available Episodes"

_PHONE_PROMPT = (
    "Please send your M-Pesa phone number (format: 254XXXXXXXXX) "
    "to complete the transaction."
)


def format_price(amount: Decimal) -> str:
    return f"KES {amount:.2f}"


def welcome(welcome_message: str, display_name: str) -> str:
    greeting = f"Hi {display_name}! " if display_name else ""
    return (
        f"{welcome_message}\n\n{greeting}What would you like to do? "
        "Use the buttons below to browse content, or tap ❓ Help to learn how it works."
    )


def movie_card(movie: Movie) -> str:
    return f"🎬 {movie.title}\n\n💰 Price: {format_price(movie.price)}"


def series_card(series: Series) -> str:
    return f"📺 {series.title}\n\nPlease send the episode range you want to purchase (e.g. 1-3):"


def series_quote(
    series: Series,
    episode_range: EpisodeRange,
    available: int,
    missing: list[int],
    total: Decimal,
) -> str:
    lines = [f"📺 {series.title}", ""]
    if missing:
        lines += [f"⚠️ Episodes not available: {', '.join(str(n) for n in missing)}", ""]
    lines += [
        f"🔢 Episodes: {episode_range} ({available} available)",
        f"💰 Total Price: {format_price(total)}",
    ]
    return "\n".join(lines)


def confirm_movie(movie: Movie, code: str) -> str:
    return (
        "Please confirm your purchase:\n\n"
        f"🎬 Movie: {movie.title}\n"
        f"💰 Price: {format_price(movie.price)}\n\n"
        f"Transaction code: {code}\n\n"
        f"{_PHONE_PROMPT}"
    )


def confirm_series(
    series: Series, episode_range: EpisodeRange, count: int, total: Decimal, code: str
) -> str:
    return (
        "Please confirm your purchase:\n\n"
        f"📺 Series: {series.title}\n"
        f"🔢 Episodes: {episode_range} ({count} episodes)\n"
        f"💰 Total Price: {format_price(total)}\n\n"
        f"Transaction code: {code}\n\n"
        f"{_PHONE_PROMPT}"
    )


def processing_payment(code: str, phone: str) -> str:
    return f"Processing payment for transaction {code} with phone number {phone}..."


def payment_not_sent(error: str | None) -> str:
    reason = error or "Unable to send the payment request."
    return f"Payment failed: {reason}\nYou can tap Purchase again to retry."


def transaction_history(rows: Iterable[tuple[Transaction, str]]) -> str:
    """``rows`` pairs each transaction with the title to show for it."""
    lines = ["Your recent transactions:", ""]
    for tx, title in rows:
        item = f"{title} (episodes {tx.episode_range})" if tx.episode_range else title
        when = tx.created_at.strftime("%Y-%m-%d %H:%M") if tx.created_at else ""
        lines.append(
            f"{tx.code} | {item} | {format_price(tx.amount)} | {tx.status.value} {when}".rstrip()
        )
    return "\n".join(lines)
