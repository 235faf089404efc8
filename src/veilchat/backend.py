"""
VeilChat - Backend store contract and in-memory implementation.

The core treats the backend as an opaque CRUD + pub/sub store with three
tables (conversations, participants, messages) and a change feed that
delivers "row inserted" events filtered by column equality.

Two properties of the contract matter to the rest of the core:
- set_encryption_key_if_unset is a conditional update ("set key only if
  currently null") and reports whether this call wrote it
- update_message / delete_message are scoped by id AND sender_id and
  return the number of affected rows, never raising for a foreign row

Change-feed delivery is at-least-once and may repeat an event.
"""

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .constants import EVENT_INSERT, TABLE_CONVERSATIONS, TABLE_MESSAGES, TABLE_PARTICIPANTS
from .errors import BackendError, ConversationNotFoundError, ErrorCode
from .models import ConversationRecord, MessageRecord, ParticipantRecord

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    """A single change-feed notification."""

    table: str
    event_type: str
    record: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Handle for one change-feed subscription.

    close() is idempotent so it can sit in every teardown path.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        filters: Dict[str, Any],
        callback: Callable[[ChangeEvent], Any],
        event_type: str = EVENT_INSERT,
    ):
        self.id = str(uuid.uuid4())
        self.feed = feed
        self.table = table
        self.filters = dict(filters)
        self.callback = callback
        self.event_type = event_type
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: ChangeEvent) -> bool:
        """Check table, event type and every filter column."""
        if event.table != self.table or event.event_type != self.event_type:
            return False
        return all(event.record.get(column) == value for column, value in self.filters.items())

    def close(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self.feed.unsubscribe(self)
        logger.debug(f"Subscription {self.id} on {self.table} closed")

    def __repr__(self) -> str:
        return f"Subscription(table={self.table}, filters={self.filters}, active={self._active})"


class ChangeFeed:
    """In-process fan-out of change events to matching subscriptions.

    Callbacks may be plain callables or coroutine functions; coroutine
    results are scheduled as tasks and tracked until they finish.
    """

    def __init__(self, duplicate_deliveries: bool = False):
        """
        Args:
            duplicate_deliveries: Deliver every event twice, to exercise
                at-least-once consumers
        """
        self.duplicate_deliveries = duplicate_deliveries
        self._subscriptions: Dict[str, Subscription] = {}
        self._callback_tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        table: str,
        filters: Dict[str, Any],
        callback: Callable[[ChangeEvent], Any],
        event_type: str = EVENT_INSERT,
    ) -> Subscription:
        subscription = Subscription(self, table, filters, callback, event_type)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Subscribed {subscription.id} to {table} {filters}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscription.

        Returns:
            Number of deliveries made
        """
        deliveries = 0
        rounds = 2 if self.duplicate_deliveries else 1
        for _ in range(rounds):
            for subscription in list(self._subscriptions.values()):
                if not subscription.active or not subscription.matches(event):
                    continue
                deliveries += 1
                try:
                    result = subscription.callback(event)
                except Exception as e:
                    logger.error(f"Change feed callback error: {e}", exc_info=True)
                    continue
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_tasks.discard)
        return deliveries

    async def drain(self) -> None:
        """Wait for every scheduled async callback to finish."""
        while self._callback_tasks:
            await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)


class TimestampClock:
    """Issues strictly increasing ISO 8601 UTC timestamps.

    Two rows written within the same clock tick still get distinct,
    correctly ordered created_at values.
    """

    def __init__(self):
        self._last: Optional[datetime] = None

    def now(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(microseconds=1)
        self._last = now
        return now.isoformat()


class Backend(ABC):
    """Contract the core expects from the shared store.

    Every method is a suspension point. Implementations raise BackendError
    (or a subclass) for failures.
    """

    feed: ChangeFeed

    # Conversations

    @abstractmethod
    async def create_conversation(
        self, conversation_id: Optional[str] = None, encryption_key: Optional[str] = None
    ) -> ConversationRecord:
        """Insert a conversation row, generating an id when none is given."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Return the conversation row, or None."""

    @abstractmethod
    async def set_encryption_key_if_unset(self, conversation_id: str, key_text: str) -> bool:
        """Set encryption_key only if it is currently null.

        Returns:
            True if this call wrote the key, False if one was already set

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """

    @abstractmethod
    async def list_conversations(self, conversation_ids: List[str]) -> List[ConversationRecord]:
        """Return the given conversations, most recently updated first."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> int:
        """Delete the conversation row. Returns affected rows."""

    # Participants

    @abstractmethod
    async def add_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord:
        """Link a user to a conversation. Linking twice is a no-op."""

    @abstractmethod
    async def list_participants(self, conversation_id: str) -> List[ParticipantRecord]:
        """Return the participant links of a conversation."""

    @abstractmethod
    async def list_conversation_ids_for_user(self, user_id: str) -> List[str]:
        """Return ids of every conversation the user participates in."""

    @abstractmethod
    async def delete_participants(self, conversation_id: str) -> int:
        """Remove every participant link of a conversation."""

    # Messages

    @abstractmethod
    async def insert_message(
        self, conversation_id: str, sender_id: str, encrypted_content: str, iv: str
    ) -> MessageRecord:
        """Insert a message row and publish an INSERT event."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        """Return a message row, or None."""

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        """Return a conversation's messages ordered by created_at, then id."""

    @abstractmethod
    async def update_message(
        self, message_id: str, sender_id: str, encrypted_content: str, iv: str, edited_at: str
    ) -> int:
        """Update ciphertext, nonce and edited_at WHERE id AND sender_id match."""

    @abstractmethod
    async def delete_message(self, message_id: str, sender_id: str) -> int:
        """Delete WHERE id AND sender_id match. Returns affected rows."""

    @abstractmethod
    async def delete_messages(self, conversation_id: str) -> int:
        """Delete every message of a conversation."""

    # Change feed

    def subscribe(
        self,
        table: str,
        filters: Dict[str, Any],
        callback: Callable[[ChangeEvent], Any],
    ) -> Subscription:
        """Subscribe to row-inserted events on ``table`` matching ``filters``."""
        if table not in (TABLE_CONVERSATIONS, TABLE_PARTICIPANTS, TABLE_MESSAGES):
            raise BackendError(
                ErrorCode.E404_SUBSCRIPTION_FAILED,
                f"Unknown table: {table}",
                {"table": table},
            )
        return self.feed.subscribe(table, filters, callback)

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryBackend(Backend):
    """Dict-backed store for tests and single-process use.

    Every operation yields to the event loop first so that concurrent
    callers interleave the way they would against a remote store.
    """

    def __init__(self, duplicate_deliveries: bool = False):
        self.feed = ChangeFeed(duplicate_deliveries=duplicate_deliveries)
        self._conversations: Dict[str, ConversationRecord] = {}
        self._participants: List[ParticipantRecord] = []
        self._messages: Dict[str, MessageRecord] = {}
        self._clock = TimestampClock()

    def _require_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(
                details={"conversation_id": conversation_id},
            )
        return conversation

    @staticmethod
    def _copy(record):
        return type(record)(**record.to_dict()) if record is not None else None

    async def create_conversation(
        self, conversation_id: Optional[str] = None, encryption_key: Optional[str] = None
    ) -> ConversationRecord:
        await asyncio.sleep(0)
        conversation_id = conversation_id or str(uuid.uuid4())
        if conversation_id in self._conversations:
            raise BackendError(
                ErrorCode.E402_WRITE_FAILED,
                "Conversation already exists",
                {"conversation_id": conversation_id},
            )
        now = self._clock.now()
        record = ConversationRecord(
            id=conversation_id, created_at=now, updated_at=now, encryption_key=encryption_key
        )
        self._conversations[conversation_id] = record
        self.feed.publish(ChangeEvent(TABLE_CONVERSATIONS, EVENT_INSERT, record.to_dict()))
        return self._copy(record)

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        await asyncio.sleep(0)
        return self._copy(self._conversations.get(conversation_id))

    async def set_encryption_key_if_unset(self, conversation_id: str, key_text: str) -> bool:
        await asyncio.sleep(0)
        conversation = self._require_conversation(conversation_id)
        if conversation.encryption_key is not None:
            return False
        conversation.encryption_key = key_text
        conversation.updated_at = self._clock.now()
        return True

    async def list_conversations(self, conversation_ids: List[str]) -> List[ConversationRecord]:
        await asyncio.sleep(0)
        wanted = set(conversation_ids)
        records = [self._copy(c) for c in self._conversations.values() if c.id in wanted]
        return sorted(records, key=lambda c: (c.updated_at, c.id), reverse=True)

    async def delete_conversation(self, conversation_id: str) -> int:
        await asyncio.sleep(0)
        return 1 if self._conversations.pop(conversation_id, None) is not None else 0

    async def add_participant(self, conversation_id: str, user_id: str) -> ParticipantRecord:
        await asyncio.sleep(0)
        self._require_conversation(conversation_id)
        for link in self._participants:
            if link.conversation_id == conversation_id and link.user_id == user_id:
                return self._copy(link)
        link = ParticipantRecord(conversation_id=conversation_id, user_id=user_id)
        self._participants.append(link)
        self.feed.publish(ChangeEvent(TABLE_PARTICIPANTS, EVENT_INSERT, link.to_dict()))
        return self._copy(link)

    async def list_participants(self, conversation_id: str) -> List[ParticipantRecord]:
        await asyncio.sleep(0)
        return [self._copy(p) for p in self._participants if p.conversation_id == conversation_id]

    async def list_conversation_ids_for_user(self, user_id: str) -> List[str]:
        await asyncio.sleep(0)
        return [p.conversation_id for p in self._participants if p.user_id == user_id]

    async def delete_participants(self, conversation_id: str) -> int:
        await asyncio.sleep(0)
        before = len(self._participants)
        self._participants = [p for p in self._participants if p.conversation_id != conversation_id]
        return before - len(self._participants)

    async def insert_message(
        self, conversation_id: str, sender_id: str, encrypted_content: str, iv: str
    ) -> MessageRecord:
        await asyncio.sleep(0)
        conversation = self._require_conversation(conversation_id)
        record = MessageRecord(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            encrypted_content=encrypted_content,
            iv=iv,
            created_at=self._clock.now(),
        )
        self._messages[record.id] = record
        conversation.updated_at = record.created_at
        self.feed.publish(ChangeEvent(TABLE_MESSAGES, EVENT_INSERT, record.to_dict()))
        return self._copy(record)

    async def get_message(self, message_id: str) -> Optional[MessageRecord]:
        await asyncio.sleep(0)
        return self._copy(self._messages.get(message_id))

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        await asyncio.sleep(0)
        records = [self._copy(m) for m in self._messages.values() if m.conversation_id == conversation_id]
        return sorted(records, key=MessageRecord.sort_key)

    async def update_message(
        self, message_id: str, sender_id: str, encrypted_content: str, iv: str, edited_at: str
    ) -> int:
        await asyncio.sleep(0)
        record = self._messages.get(message_id)
        if record is None or record.sender_id != sender_id:
            return 0
        record.encrypted_content = encrypted_content
        record.iv = iv
        record.edited_at = edited_at
        return 1

    async def delete_message(self, message_id: str, sender_id: str) -> int:
        await asyncio.sleep(0)
        record = self._messages.get(message_id)
        if record is None or record.sender_id != sender_id:
            return 0
        del self._messages[message_id]
        return 1

    async def delete_messages(self, conversation_id: str) -> int:
        await asyncio.sleep(0)
        doomed = [m.id for m in self._messages.values() if m.conversation_id == conversation_id]
        for message_id in doomed:
            del self._messages[message_id]
        return len(doomed)
