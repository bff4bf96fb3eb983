"""Conversation engine — interprets inbound events against session state.

Contract:
- Every inbound event registers the user (find_or_create) before anything else
- Menu commands and purchase buttons work from any state
- Free text is routed by the session's current state
- State changes only go through transitions.next_state()
- ValidationError: user is re-prompted, state and context unchanged
- NotFoundError: user sees its message, session returns to IDLE
- Anything else: logged with traceback, generic apology, session reset
- Internal error text never reaches the user

Handlers are synchronous and may block on the database, the payment
provider and the Telegram API; the event router runs them in worker threads
and serializes each user's events.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

from mediabot.catalog.models import ContentKind, Episode, EpisodeRange, User
from mediabot.catalog.store import MAX_SEARCH_RESULTS, CatalogStore, UserDirectory
from mediabot.channels.protocol import Button, InboundAction, InboundMessage, MessagingChannel
from mediabot.conversation import messages
from mediabot.conversation.parsing import (
    PurchaseAction,
    match_command,
    movie_action,
    normalize_phone,
    parse_action,
    series_action,
)
from mediabot.conversation.transitions import Trigger, TransitionError, next_state
from mediabot.errors import NotFoundError, ValidationError
from mediabot.ledger.models import TransactionStatus
from mediabot.ledger.store import Ledger
from mediabot.payments.mpesa import PaymentGateway, mask_phone
from mediabot.sessions.models import CONTEXT_FIELDS, ConversationState, Session
from mediabot.sessions.store import SessionStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
MAX_RANGE_SPAN = 500  # episodes per quote

# A handler reports what happened plus the session context to store with it
Step = tuple[Trigger, dict[str, Any]]

# Triggers that keep the current flow context instead of replacing it
_CONTEXT_PRESERVING = {Trigger.INPUT_REJECTED}


class ConversationEngine:
    """Per-user purchase flow over the session store."""

    def __init__(
        self,
        sessions: SessionStore,
        catalog: CatalogStore,
        users: UserDirectory,
        ledger: Ledger,
        gateway: PaymentGateway,
        channel: MessagingChannel,
        *,
        welcome_message: str = "Welcome to our Movie and Series Bot! How can I help you today?",
    ):
        self._sessions = sessions
        self._catalog = catalog
        self._users = users
        self._ledger = ledger
        self._gateway = gateway
        self._channel = channel
        self._welcome_message = welcome_message

        self._commands: dict[Trigger, Callable[..., Step]] = {
            Trigger.START: self._on_start,
            Trigger.HELP: self._on_help,
            Trigger.SHOW_TRANSACTIONS: self._on_transactions,
            Trigger.BROWSE_MOVIES: self._on_browse_movies,
            Trigger.BROWSE_SERIES: self._on_browse_series,
        }
        self._text_handlers: dict[ConversationState, Callable[..., Step]] = {
            ConversationState.IDLE: self._on_idle_text,
            ConversationState.WAITING_FOR_MOVIE_TITLE: self._on_movie_title,
            ConversationState.WAITING_FOR_SERIES_TITLE: self._on_series_title,
            ConversationState.WAITING_FOR_EPISODE_RANGE: self._on_episode_range,
            ConversationState.WAITING_FOR_PHONE: self._on_phone,
        }

    # ── Entry points ──────────────────────────────────────────────────────

    def handle_message(self, message: InboundMessage) -> ConversationState:
        """Handle typed text or a reply-keyboard label. Returns the new state."""
        user = self._users.find_or_create(message.user_id, message.display_name)
        session = self._sessions.get(message.user_id)
        command = match_command(message.text)
        if command is not None:
            handler = self._commands[command]
        else:
            handler = self._text_handlers[session.state]
        return self._run(handler, message, session, user)

    def handle_action(self, action: InboundAction) -> ConversationState:
        """Handle an inline-button press. Returns the new state."""
        ack = self._channel.acknowledge_action(action.callback_id)
        if not ack.success:
            logger.debug("Could not acknowledge action for user %s: %s", action.user_id, ack.error)
        user = self._users.find_or_create(action.user_id, action.display_name)
        session = self._sessions.get(action.user_id)
        return self._run(self._on_purchase, action, session, user)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _run(
        self,
        handler: Callable[..., Step],
        event: InboundMessage | InboundAction,
        session: Session,
        user: User,
    ) -> ConversationState:
        try:
            trigger, context = handler(event, session, user)
        except ValidationError as e:
            logger.info("Rejected input from user %s in %s: %s", user.user_id, session.state.value, e)
            self._reply(event.chat_id, e.user_message)
            trigger, context = Trigger.INPUT_REJECTED, {}
        except NotFoundError as e:
            logger.info("User %s: %s", user.user_id, e)
            self._reply(event.chat_id, e.user_message)
            trigger, context = Trigger.CONTENT_UNAVAILABLE, {}
        except Exception:
            logger.exception(
                "Unhandled error for user %s in state %s", user.user_id, session.state.value
            )
            self._reply(event.chat_id, messages.GENERIC_APOLOGY)
            trigger, context = Trigger.FAILED, {}
        return self._advance(session, trigger, context)

    def _advance(self, session: Session, trigger: Trigger, context: dict[str, Any]) -> ConversationState:
        try:
            target = next_state(session.state, trigger)
        except TransitionError:
            logger.exception("Illegal transition for user %s", session.user_id)
            self._sessions.reset(session.user_id)
            return ConversationState.IDLE

        if trigger in _CONTEXT_PRESERVING:
            fields = dict(context)
        else:
            fields = {name: None for name in CONTEXT_FIELDS}
            fields.update(context)
        self._sessions.set(session.user_id, state=target, **fields)
        if target != session.state:
            logger.info(
                "User %s: %s -> %s (%s)",
                session.user_id, session.state.value, target.value, trigger.value,
            )
        return target

    def _reply(self, chat_id: str, text: str, **kwargs: Any) -> None:
        result = self._channel.send_text(chat_id, text, **kwargs)
        if not result.success:
            logger.warning("Reply to chat %s failed: %s", chat_id, result.error)

    # ── Menu commands ─────────────────────────────────────────────────────

    def _on_start(self, message: InboundMessage, session: Session, user: User) -> Step:
        self._reply(
            message.chat_id,
            messages.welcome(self._welcome_message, user.display_name),
            keyboard=messages.MAIN_MENU,
        )
        return Trigger.START, {}

    def _on_help(self, message: InboundMessage, session: Session, user: User) -> Step:
        self._reply(message.chat_id, messages.HELP_TEXT)
        return Trigger.HELP, {}

    def _on_transactions(self, message: InboundMessage, session: Session, user: User) -> Step:
        transactions = self._ledger.list_for_user(user.user_id, limit=HISTORY_LIMIT)
        if not transactions:
            self._reply(message.chat_id, messages.NO_TRANSACTIONS)
            return Trigger.SHOW_TRANSACTIONS, {}

        titles: dict[tuple[ContentKind, int], str] = {}
        rows = []
        for tx in transactions:
            key = (tx.kind, tx.content_id)
            if key not in titles:
                item = self._catalog.find_by_id(tx.kind, tx.content_id)
                titles[key] = item.title if item else f"{tx.kind.value} #{tx.content_id}"
            rows.append((tx, titles[key]))
        self._reply(message.chat_id, messages.transaction_history(rows))
        return Trigger.SHOW_TRANSACTIONS, {}

    def _on_browse_movies(self, message: InboundMessage, session: Session, user: User) -> Step:
        self._reply(message.chat_id, messages.MOVIE_TITLE_PROMPT)
        return Trigger.BROWSE_MOVIES, {}

    def _on_browse_series(self, message: InboundMessage, session: Session, user: User) -> Step:
        self._reply(message.chat_id, messages.SERIES_TITLE_PROMPT)
        return Trigger.BROWSE_SERIES, {}

    # ── Free text by state ────────────────────────────────────────────────

    def _on_idle_text(self, message: InboundMessage, session: Session, user: User) -> Step:
        self._reply(message.chat_id, messages.MENU_HINT, keyboard=messages.MAIN_MENU)
        return Trigger.UNRECOGNIZED, {}

    def _on_movie_title(self, message: InboundMessage, session: Session, user: User) -> Step:
        movies = self._catalog.find_items_by_title(
            ContentKind.MOVIE, message.text, limit=MAX_SEARCH_RESULTS
        )
        if not movies:
            self._reply(message.chat_id, messages.NO_MOVIES_FOUND)
            return Trigger.MOVIE_TITLE_SUBMITTED, {}
        for movie in movies:
            result = self._channel.send_photo(
                message.chat_id,
                movie.thumbnail,
                messages.movie_card(movie),
                buttons=[Button(messages.PURCHASE_BUTTON, movie_action(movie.id))],
            )
            if not result.success:
                logger.warning("Movie card %s not sent: %s", movie.id, result.error)
        return Trigger.MOVIE_TITLE_SUBMITTED, {}

    def _on_series_title(self, message: InboundMessage, session: Session, user: User) -> Step:
        matches = self._catalog.find_items_by_title(ContentKind.SERIES, message.text, limit=1)
        if not matches:
            self._reply(message.chat_id, messages.NO_SERIES_FOUND)
            return Trigger.SERIES_NOT_FOUND, {}
        series = matches[0]
        result = self._channel.send_photo(
            message.chat_id, series.thumbnail, messages.series_card(series)
        )
        if not result.success:
            logger.warning("Series card %s not sent: %s", series.id, result.error)
        return Trigger.SERIES_MATCHED, {"series_id": series.id}

    def _on_episode_range(self, message: InboundMessage, session: Session, user: User) -> Step:
        episode_range = EpisodeRange.parse(message.text)
        if episode_range.end - episode_range.start + 1 > MAX_RANGE_SPAN:
            raise ValidationError(
                f"episode range too wide: {episode_range}",
                user_message=f"Please request at most {MAX_RANGE_SPAN} episodes at a time.",
            )
        series = self._catalog.find_by_id(ContentKind.SERIES, session.series_id)
        if series is None:
            raise NotFoundError(
                f"series {session.series_id} vanished during range entry",
                user_message=messages.SERIES_UNAVAILABLE,
            )

        episodes, missing, total = self._quote(series.id, episode_range)
        if not episodes:
            self._reply(message.chat_id, messages.NO_EPISODES_IN_RANGE)
            return Trigger.RANGE_QUOTED, {}
        self._require_active(user)

        code = self._ledger.create_pending(
            user.user_id, message.chat_id, total, ContentKind.SERIES, series.id, episode_range
        )
        self._reply(
            message.chat_id,
            messages.series_quote(series, episode_range, len(episodes), missing, total),
            buttons=[Button(messages.PURCHASE_EPISODES_BUTTON, series_action(series.id, episode_range))],
        )
        return Trigger.RANGE_QUOTED, {"quote_code": code}

    def _on_phone(self, message: InboundMessage, session: Session, user: User) -> Step:
        phone = normalize_phone(message.text)
        code = session.transaction_code
        tx = self._ledger.find_by_code(code) if code else None
        if tx is None or tx.user_id != user.user_id or tx.status != TransactionStatus.PENDING:
            raise NotFoundError(
                f"transaction {code} is not awaiting payment",
                user_message=messages.PURCHASE_EXPIRED,
            )

        self._reply(message.chat_id, messages.processing_payment(tx.code, phone))
        initiation = self._gateway.initiate(phone, tx.amount, tx.code)
        if not initiation.accepted:
            logger.warning(
                "Payment not initiated: code=%s phone=%s error=%s",
                tx.code, mask_phone(phone), initiation.error,
            )
            self._reply(message.chat_id, messages.payment_not_sent(initiation.error))
            return Trigger.PAYMENT_FAILED, {}

        if initiation.reference:
            self._ledger.attach_reference(tx.code, initiation.reference)
        self._reply(message.chat_id, messages.PAYMENT_REQUESTED)
        return Trigger.PAYMENT_REQUESTED, {}

    # ── Purchase buttons ──────────────────────────────────────────────────

    def _on_purchase(self, action: InboundAction, session: Session, user: User) -> Step:
        try:
            purchase = parse_action(action.data)
        except ValidationError as e:
            raise NotFoundError(str(e), user_message=messages.STALE_BUTTON) from e
        if purchase.kind == ContentKind.MOVIE:
            return self._purchase_movie(action, purchase, user)
        return self._purchase_series(action, session, purchase, user)

    def _purchase_movie(self, action: InboundAction, purchase: PurchaseAction, user: User) -> Step:
        movie = self._catalog.find_by_id(ContentKind.MOVIE, purchase.content_id)
        if movie is None:
            raise NotFoundError(
                f"movie {purchase.content_id} not in catalog",
                user_message=messages.MOVIE_UNAVAILABLE,
            )
        self._require_active(user)

        code = self._ledger.create_pending(
            user.user_id, action.chat_id, movie.price, ContentKind.MOVIE, movie.id
        )
        self._reply(action.chat_id, messages.confirm_movie(movie, code))
        return Trigger.PURCHASE_STARTED, {
            "transaction_code": code,
            "content_id": movie.id,
            "kind": ContentKind.MOVIE,
        }

    def _purchase_series(
        self, action: InboundAction, session: Session, purchase: PurchaseAction, user: User
    ) -> Step:
        episode_range = purchase.episode_range
        series = self._catalog.find_by_id(ContentKind.SERIES, purchase.content_id)
        if series is None:
            raise NotFoundError(
                f"series {purchase.content_id} not in catalog",
                user_message=messages.SERIES_UNAVAILABLE,
            )
        episodes, _, total = self._quote(series.id, episode_range)
        if not episodes:
            raise NotFoundError(
                f"no episodes of series {series.id} in {episode_range}",
                user_message=messages.NO_EPISODES_IN_RANGE,
            )
        self._require_active(user)

        code = self._reusable_quote(session.quote_code, user, series.id, episode_range, total)
        if code is None:
            code = self._ledger.create_pending(
                user.user_id, action.chat_id, total, ContentKind.SERIES, series.id, episode_range
            )
        self._reply(
            action.chat_id,
            messages.confirm_series(series, episode_range, len(episodes), total, code),
        )
        return Trigger.PURCHASE_STARTED, {
            "transaction_code": code,
            "content_id": series.id,
            "kind": ContentKind.SERIES,
            "episode_range": episode_range,
        }

    # ── Helpers ───────────────────────────────────────────────────────────

    def _quote(
        self, series_id: int, episode_range: EpisodeRange
    ) -> tuple[list[Episode], list[int], Decimal]:
        """Available episodes, missing episode numbers and total price."""
        episodes = self._catalog.find_episodes_in_range(
            series_id, episode_range.start, episode_range.end
        )
        present = {e.episode_number for e in episodes}
        missing = [n for n in episode_range.numbers() if n not in present]
        total = sum((e.price for e in episodes), Decimal("0"))
        return episodes, missing, total

    def _reusable_quote(
        self,
        quote_code: str | None,
        user: User,
        series_id: int,
        episode_range: EpisodeRange,
        total: Decimal,
    ) -> str | None:
        """The quoted transaction's code if it still describes this purchase."""
        if not quote_code:
            return None
        tx = self._ledger.find_by_code(quote_code)
        if (
            tx is not None
            and tx.status == TransactionStatus.PENDING
            and tx.user_id == user.user_id
            and tx.kind == ContentKind.SERIES
            and tx.content_id == series_id
            and tx.episode_range == episode_range
            and tx.amount == total
        ):
            return tx.code
        return None

    def _require_active(self, user: User) -> None:
        if not user.is_active:
            raise NotFoundError(
                f"user {user.user_id} is inactive",
                user_message=messages.ACCOUNT_INACTIVE,
            )
