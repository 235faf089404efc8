"""
VeilChat - Message pipeline for one conversation view.

Turns backend message rows into decrypted messages for the UI and turns
UI mutations into encrypted backend writes.

View lifecycle (enforced by a small state machine):
    UNRESOLVED -> LOADING -> READY <-> SENDING, any state -> CLOSED

Ordering rules:
- Every history fetch carries a sequence number. A response older than the
  most recently applied one is dropped, as is anything that arrives after
  the view was closed.
- Mutations never patch local state. A successful mutation, like a remote
  notification, schedules a refresh from the backend. Requests that arrive
  while a refresh is running collapse into a single follow-up refresh.

Only per-message decryption failures are recovered here: the row is shown
with a placeholder and marked decryption_failed. Every other failure is
raised to the caller.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from . import crypto
from .backend import Backend
from .constants import DECRYPTION_PLACEHOLDER, MAX_TEXT_MESSAGE_SIZE, PIPELINE_STATE_HISTORY, TEXT_ENCODING
from .errors import (
    AuthorizationError,
    BackendError,
    DecryptionError,
    ErrorCode,
    KeyManagementError,
    MessageError,
    MessageNotFoundError,
    NotReadyError,
    PersistError,
    VeilChatError,
)
from .key_bootstrap import KeyBootstrap
from .models import DecryptedMessage, MessageRecord
from .utils import utc_now

logger = logging.getLogger(__name__)


class ViewState(Enum):
    """States of a conversation view."""

    UNRESOLVED = auto()  # No key yet, or key bootstrap failed
    LOADING = auto()  # Key resolved, first history fetch in flight
    READY = auto()  # Key resolved, history decrypted
    SENDING = auto()  # READY with at least one send in flight
    CLOSED = auto()  # View torn down


class ViewEvent(Enum):
    """Events that trigger view state transitions."""

    KEY_RESOLVED = auto()
    KEY_FAILED = auto()
    HISTORY_LOADED = auto()
    SEND_STARTED = auto()
    SEND_FINISHED = auto()
    CLOSE_REQUESTED = auto()


class MutationStatus(Enum):
    """Status of the latest call of one mutation, for UI binding."""

    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class MutationState:
    """Latest outcome of one mutation entry point.

    pending_input keeps the submitted text after a failure so the UI can
    offer it for resubmission.
    """

    status: MutationStatus = MutationStatus.IDLE
    error: Optional[VeilChatError] = None
    pending_input: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_pending(self) -> bool:
        return self.status == MutationStatus.PENDING


@dataclass
class StateTransition:
    """Represents a view state transition."""

    from_state: ViewState
    event: ViewEvent
    to_state: ViewState
    timestamp: float = field(default_factory=time.time)


class MessagePipeline:
    """
    Decrypted message view and mutation entry points for one conversation.

    The pipeline is bound to a single conversation id and a single sender
    identity. Switching conversations means closing this pipeline and
    opening another.
    """

    TRANSITIONS: Dict[ViewState, Dict[ViewEvent, ViewState]] = {
        ViewState.UNRESOLVED: {
            ViewEvent.KEY_RESOLVED: ViewState.LOADING,
            ViewEvent.KEY_FAILED: ViewState.UNRESOLVED,
            ViewEvent.CLOSE_REQUESTED: ViewState.CLOSED,
        },
        ViewState.LOADING: {
            ViewEvent.HISTORY_LOADED: ViewState.READY,
            ViewEvent.CLOSE_REQUESTED: ViewState.CLOSED,
        },
        ViewState.READY: {
            ViewEvent.SEND_STARTED: ViewState.SENDING,
            ViewEvent.CLOSE_REQUESTED: ViewState.CLOSED,
        },
        ViewState.SENDING: {
            ViewEvent.SEND_FINISHED: ViewState.READY,
            ViewEvent.CLOSE_REQUESTED: ViewState.CLOSED,
        },
        ViewState.CLOSED: {},
    }

    MUTATIONS = ("send", "edit", "delete")

    def __init__(
        self,
        conversation_id: str,
        sender_id: Optional[str],
        backend: Backend,
        bootstrap: KeyBootstrap,
        placeholder: str = DECRYPTION_PLACEHOLDER,
        max_message_size: int = MAX_TEXT_MESSAGE_SIZE,
    ):
        """
        Initialize a conversation view.

        Args:
            conversation_id: Conversation this view is bound to
            sender_id: Authenticated user id, or None when signed out
            backend: Shared store
            bootstrap: Key resolver for this client
            placeholder: Text shown for messages that fail to decrypt
            max_message_size: Maximum UTF-8 size of a message in bytes
        """
        self.conversation_id = conversation_id
        self.sender_id = sender_id
        self.backend = backend
        self.bootstrap = bootstrap
        self.placeholder = placeholder
        self.max_message_size = max_message_size

        self.state = ViewState.UNRESOLVED
        self.transition_history: List[StateTransition] = []
        self.last_error: Optional[VeilChatError] = None
        self.mutations: Dict[str, MutationState] = {name: MutationState() for name in self.MUTATIONS}
        self._mutations_in_flight: Dict[str, int] = {name: 0 for name in self.MUTATIONS}

        self._key: Optional[bytes] = None
        self._messages: List[DecryptedMessage] = []
        self._closed = False
        self._sends_in_flight = 0

        # Fetch sequencing
        self._fetch_seq = 0
        self._applied_seq = 0
        self.fetch_count = 0
        self.discarded_fetches = 0

        # Refresh coalescing
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_pending = False
        self.refresh_requests = 0

        # Callbacks
        self.on_messages_changed: Optional[Callable[[List[DecryptedMessage]], None]] = None
        self.on_state_change: Optional[Callable[[ViewState, ViewState], None]] = None

    # State machine

    def _transition(self, event: ViewEvent) -> bool:
        """
        Attempt state transition based on event.

        Returns:
            True if the transition happened, False if it is not valid from
            the current state
        """
        new_state = self.TRANSITIONS.get(self.state, {}).get(event)
        if new_state is None:
            logger.debug(f"Ignoring {event.name} in state {self.state.name}")
            return False

        old_state = self.state
        self.state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > PIPELINE_STATE_HISTORY:
            self.transition_history = self.transition_history[-PIPELINE_STATE_HISTORY:]

        if old_state != new_state:
            logger.debug(
                f"View {self.conversation_id}: {old_state.name} -> {new_state.name} "
                f"(event: {event.name})"
            )
            if self.on_state_change:
                try:
                    self.on_state_change(old_state, new_state)
                except Exception as e:
                    logger.error(f"State change callback error: {e}")

        return True

    # Readiness

    @property
    def is_key_ready(self) -> bool:
        """True once a key is resolved and the view is still open. Gates sending."""
        return self._key is not None and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def messages(self) -> List[DecryptedMessage]:
        """Decrypted history as last confirmed by the backend."""
        return list(self._messages)

    def _require_open(self) -> None:
        if self._closed:
            raise NotReadyError(
                ErrorCode.E307_VIEW_CLOSED,
                "Conversation view is closed",
                {"conversation_id": self.conversation_id},
            )

    def _require_key(self) -> bytes:
        self._require_open()
        if self._key is None:
            raise NotReadyError(
                message="Conversation key is not resolved",
                details={"conversation_id": self.conversation_id},
            )
        return self._key

    def _require_identity(self) -> str:
        if not self.sender_id:
            raise NotReadyError(message="No authenticated sender identity")
        return self.sender_id

    # Opening and history

    async def open(self) -> List[DecryptedMessage]:
        """
        Resolve the conversation key, then load history.

        A bootstrap failure leaves the view UNRESOLVED with last_error set,
        so nothing can be sent or decrypted with a missing key.

        Raises:
            KeyManagementError: If no key could be resolved
            BackendError: If the backend could not be read
        """
        self._require_open()

        if self._key is None:
            try:
                key = await self.bootstrap.resolve(self.conversation_id)
            except (KeyManagementError, BackendError) as e:
                self.last_error = e
                self._transition(ViewEvent.KEY_FAILED)
                logger.error(f"Key bootstrap failed for conversation {self.conversation_id}: {e}")
                raise

            if self._closed:
                return []
            self._key = key
            self._transition(ViewEvent.KEY_RESOLVED)

        return await self.fetch_history()

    async def fetch_history(self) -> List[DecryptedMessage]:
        """
        Fetch and decrypt the full conversation history.

        Rows are ordered by created_at, then id. A row that fails to decrypt
        is kept with the placeholder text instead of failing the batch.

        Returns:
            The decrypted messages of this fetch (also applied to the view
            unless a newer fetch was applied first)

        Raises:
            NotReadyError: If the key is unresolved or the view is closed
            BackendError: If the backend could not be read
        """
        key = self._require_key()

        self._fetch_seq += 1
        seq = self._fetch_seq
        self.fetch_count += 1

        records = await self.backend.list_messages(self.conversation_id)
        records = sorted(records, key=MessageRecord.sort_key)

        decrypted = []
        for record in records:
            decrypted.append(await self._decrypt_record(record, key))

        if self._closed:
            logger.debug(f"Dropping fetch {seq} for closed view {self.conversation_id}")
            self.discarded_fetches += 1
            return decrypted

        if seq < self._applied_seq:
            logger.debug(
                f"Dropping stale fetch {seq} for {self.conversation_id} "
                f"(already applied {self._applied_seq})"
            )
            self.discarded_fetches += 1
            return decrypted

        self._applied_seq = seq
        self._messages = decrypted
        self.last_error = None
        self._transition(ViewEvent.HISTORY_LOADED)

        if self.on_messages_changed:
            try:
                self.on_messages_changed(self.messages)
            except Exception as e:
                logger.error(f"Messages changed callback error: {e}")

        return decrypted

    async def _decrypt_record(self, record: MessageRecord, key: bytes) -> DecryptedMessage:
        try:
            content = await crypto.decrypt_message_async(record.encrypted_content, record.iv, key)
        except DecryptionError as e:
            logger.warning(
                f"Message {record.id} in conversation {record.conversation_id} "
                f"could not be decrypted [{e.code.value}]"
            )
            return DecryptedMessage.from_record(record, self.placeholder, decryption_failed=True)
        return DecryptedMessage.from_record(record, content)

    # Mutations

    def _begin_mutation(self, name: str, text: Optional[str] = None) -> MutationState:
        """Start tracking one call. Its state becomes the published latest."""
        state = MutationState(status=MutationStatus.PENDING, pending_input=text)
        self.mutations[name] = state
        self._mutations_in_flight[name] += 1
        return state

    def _finish_mutation(
        self, name: str, state: MutationState, error: Optional[VeilChatError] = None
    ) -> None:
        """Settle the state of the call that started it.

        Each call owns its MutationState, so an older call finishing late never
        overwrites the input or outcome of a newer one.
        """
        self._mutations_in_flight[name] -= 1
        state.updated_at = time.time()
        if error is None:
            state.status = MutationStatus.SUCCESS
            state.error = None
            state.pending_input = None
        else:
            # pending_input stays so a failed send can be resubmitted
            state.status = MutationStatus.ERROR
            state.error = error

    def is_mutation_pending(self, name: str) -> bool:
        """True while any call of the named mutation is still running."""
        return self._mutations_in_flight[name] > 0

    def _validate_content(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise MessageError(ErrorCode.E302_EMPTY_CONTENT, "Message content is empty")
        size = len(text.encode(TEXT_ENCODING))
        if size > self.max_message_size:
            raise MessageError(
                ErrorCode.E306_MESSAGE_TOO_LARGE,
                "Message content is too large",
                {"size": size, "max_size": self.max_message_size},
            )

    async def send(self, plaintext: str) -> MessageRecord:
        """
        Encrypt and persist a new message.

        Args:
            plaintext: Message text (must not be blank)

        Returns:
            The persisted backend row

        Raises:
            MessageError: If the content is blank or too large
            NotReadyError: If the key or sender identity is missing
            PersistError: If the backend rejected the write (not retried)
        """
        mutation = self._begin_mutation("send", plaintext)
        try:
            self._validate_content(plaintext)
            key = self._require_key()
            sender_id = self._require_identity()

            payload = await crypto.encrypt_message_async(plaintext, key)

            self._sends_in_flight += 1
            if self._sends_in_flight == 1:
                self._transition(ViewEvent.SEND_STARTED)
            try:
                record = await self.backend.insert_message(
                    self.conversation_id, sender_id, payload.encrypted_content, payload.iv
                )
            except BackendError as e:
                raise PersistError(
                    message=f"Failed to send message: {e.message}",
                    details={"conversation_id": self.conversation_id, "cause": e.code.value},
                ) from e
            finally:
                self._sends_in_flight -= 1
                if self._sends_in_flight == 0:
                    self._transition(ViewEvent.SEND_FINISHED)

        except VeilChatError as e:
            self._finish_mutation("send", mutation, e)
            logger.warning(f"Send to conversation {self.conversation_id} failed: {e}")
            raise

        self._finish_mutation("send", mutation)
        logger.debug(f"Message {record.id} sent to conversation {self.conversation_id}")
        self.schedule_refresh()
        return record

    async def _check_ownership(self, message_id: str, sender_id: str) -> None:
        """Raise if the message is missing from this conversation or owned by someone else."""
        existing = await self.backend.get_message(message_id)
        if existing is None or existing.conversation_id != self.conversation_id:
            raise MessageNotFoundError(
                details={"message_id": message_id, "conversation_id": self.conversation_id}
            )
        if existing.sender_id != sender_id:
            raise AuthorizationError(details={"message_id": message_id})

    async def edit(self, message_id: str, new_plaintext: str) -> None:
        """
        Re-encrypt a message with a fresh nonce and mark it edited.

        The backend update is scoped by id AND sender id, so a non-owner can
        never change the row.

        Raises:
            MessageError: If the content is blank or too large
            NotReadyError: If the key or sender identity is missing
            MessageNotFoundError: If the message is not in this conversation
            AuthorizationError: If the message belongs to another sender
            PersistError: If the backend rejected the write
        """
        mutation = self._begin_mutation("edit", new_plaintext)
        try:
            self._validate_content(new_plaintext)
            key = self._require_key()
            sender_id = self._require_identity()

            await self._check_ownership(message_id, sender_id)
            payload = await crypto.encrypt_message_async(new_plaintext, key)

            try:
                affected = await self.backend.update_message(
                    message_id, sender_id, payload.encrypted_content, payload.iv, utc_now()
                )
            except BackendError as e:
                raise PersistError(
                    message=f"Failed to edit message: {e.message}",
                    details={"message_id": message_id, "cause": e.code.value},
                ) from e

            if affected == 0:
                # Deleted or reassigned between the check and the write
                await self._check_ownership(message_id, sender_id)
                raise MessageNotFoundError(details={"message_id": message_id})

        except VeilChatError as e:
            self._finish_mutation("edit", mutation, e)
            logger.warning(f"Edit of message {message_id} failed: {e}")
            raise

        self._finish_mutation("edit", mutation)
        logger.debug(f"Message {message_id} edited")
        self.schedule_refresh()

    async def delete(self, message_id: str) -> None:
        """
        Delete one of the caller's messages.

        Raises:
            NotReadyError: If the sender identity is missing or the view is closed
            MessageNotFoundError: If the message is not in this conversation
            AuthorizationError: If the message belongs to another sender
            PersistError: If the backend rejected the delete
        """
        mutation = self._begin_mutation("delete")
        try:
            self._require_open()
            sender_id = self._require_identity()

            await self._check_ownership(message_id, sender_id)

            try:
                affected = await self.backend.delete_message(message_id, sender_id)
            except BackendError as e:
                raise PersistError(
                    message=f"Failed to delete message: {e.message}",
                    details={"message_id": message_id, "cause": e.code.value},
                ) from e

            if affected == 0:
                await self._check_ownership(message_id, sender_id)
                raise MessageNotFoundError(details={"message_id": message_id})

        except VeilChatError as e:
            self._finish_mutation("delete", mutation, e)
            logger.warning(f"Delete of message {message_id} failed: {e}")
            raise

        self._finish_mutation("delete", mutation)
        logger.debug(f"Message {message_id} deleted")
        self.schedule_refresh()

    # Refresh scheduling

    def schedule_refresh(self) -> None:
        """
        Request a refetch of the conversation history.

        Starts one refresh if none is running; otherwise marks a single
        follow-up refresh, however many requests arrive in the meantime.
        Does nothing before the key is resolved or after close.
        """
        if not self.is_key_ready:
            return

        self.refresh_requests += 1
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_pending = True
            return

        self._refresh_task = asyncio.ensure_future(self._run_refresh())

    async def _run_refresh(self) -> None:
        while True:
            self._refresh_pending = False
            try:
                await self.fetch_history()
            except VeilChatError as e:
                self.last_error = e
                logger.error(f"Refresh of conversation {self.conversation_id} failed: {e}")

            if self._closed or not self._refresh_pending:
                break

    async def wait_idle(self) -> None:
        """Wait until no refresh is running or pending."""
        while self._refresh_task is not None and not self._refresh_task.done():
            await asyncio.wait({self._refresh_task})

    # Teardown

    async def close(self) -> None:
        """Close the view and cancel any in-flight refresh. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._transition(ViewEvent.CLOSE_REQUESTED)

        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.debug(f"View for conversation {self.conversation_id} closed")

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get view statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "conversation_id": self.conversation_id,
            "state": self.state.name,
            "is_key_ready": self.is_key_ready,
            "message_count": len(self._messages),
            "undecryptable_count": sum(1 for m in self._messages if m.decryption_failed),
            "fetch_count": self.fetch_count,
            "discarded_fetches": self.discarded_fetches,
            "refresh_requests": self.refresh_requests,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "mutations": {name: state.status.value for name, state in self.mutations.items()},
        }

    def __repr__(self) -> str:
        return f"MessagePipeline(conversation={self.conversation_id}, state={self.state.name})"
