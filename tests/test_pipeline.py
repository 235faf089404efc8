"""
VeilChat - Message pipeline tests.

Tests for conversation views: history decryption, sends, ownership-scoped
edits and deletes, fetch ordering, refresh coalescing and teardown.
"""

import asyncio
import base64
from typing import Optional

import pytest

from veilchat import crypto
from veilchat.backend import InMemoryBackend
from veilchat.errors import (
    AuthorizationError,
    BackendError,
    ErrorCode,
    KeyBootstrapError,
    MessageError,
    MessageNotFoundError,
    NotReadyError,
    PersistError,
)
from veilchat.key_bootstrap import KeyBootstrap
from veilchat.key_store import KeyStore
from veilchat.pipeline import MessagePipeline, MutationStatus, ViewState


class GatedBackend(InMemoryBackend):
    """In-memory backend that can hold one list_messages response."""

    def __init__(self):
        super().__init__()
        self.gate: Optional[asyncio.Event] = None
        self.waiting: Optional[asyncio.Event] = None

    def hold_next_fetch(self):
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()
        return self.gate

    async def list_messages(self, conversation_id):
        records = await super().list_messages(conversation_id)
        gate, self.gate = self.gate, None
        if gate is not None:
            self.waiting.set()
            await gate.wait()
        return records


class RejectingBackend(InMemoryBackend):
    """In-memory backend that refuses every message insert."""

    async def insert_message(self, conversation_id, sender_id, encrypted_content, iv):
        await asyncio.sleep(0)
        raise BackendError(ErrorCode.E402_WRITE_FAILED, "insert rejected")


class RejectAfterBackend(InMemoryBackend):
    """In-memory backend that accepts a number of inserts, then refuses the rest."""

    def __init__(self, accepted: int):
        super().__init__()
        self.accepted = accepted

    async def insert_message(self, conversation_id, sender_id, encrypted_content, iv):
        if self.accepted <= 0:
            await asyncio.sleep(0)
            raise BackendError(ErrorCode.E402_WRITE_FAILED, "insert rejected")
        self.accepted -= 1
        return await super().insert_message(conversation_id, sender_id, encrypted_content, iv)


async def open_view(backend, user_id, conversation_id="conv-1", bootstrap=None):
    """Create a conversation if needed and open a view on it."""
    if await backend.get_conversation(conversation_id) is None:
        await backend.create_conversation(conversation_id)
    bootstrap = bootstrap or KeyBootstrap(backend, KeyStore())
    pipeline = MessagePipeline(conversation_id, user_id, backend, bootstrap)
    await pipeline.open()
    return pipeline


async def insert_encrypted(backend, key, conversation_id, sender_id, text):
    """Insert a row the way another client would."""
    payload = crypto.encrypt_message(text, key)
    return await backend.insert_message(conversation_id, sender_id, payload.encrypted_content, payload.iv)


@pytest.mark.asyncio
class TestOpen:
    """Tests for opening a conversation view."""

    async def test_open_reaches_ready(self, backend, user_a):
        """Test the UNRESOLVED -> LOADING -> READY path."""
        await backend.create_conversation("conv-1")
        pipeline = MessagePipeline("conv-1", user_a, backend, KeyBootstrap(backend, KeyStore()))
        assert pipeline.state == ViewState.UNRESOLVED
        assert pipeline.is_key_ready is False

        messages = await pipeline.open()

        assert messages == []
        assert pipeline.state == ViewState.READY
        assert pipeline.is_key_ready is True
        assert [t.to_state for t in pipeline.transition_history] == [ViewState.LOADING, ViewState.READY]

    async def test_bootstrap_failure_blocks_view(self, backend, user_a):
        """Test that a view without a key stays unresolved and cannot send."""
        pipeline = MessagePipeline("missing", user_a, backend, KeyBootstrap(backend, KeyStore()))

        with pytest.raises(KeyBootstrapError):
            await pipeline.open()

        assert pipeline.state == ViewState.UNRESOLVED
        assert isinstance(pipeline.last_error, KeyBootstrapError)
        assert pipeline.is_key_ready is False

        with pytest.raises(NotReadyError):
            await pipeline.send("hello")
        with pytest.raises(NotReadyError):
            await pipeline.fetch_history()

    async def test_history_is_ordered(self, backend, user_a, user_b):
        """Test that history comes back in creation order."""
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")

        for i in range(5):
            sender = user_a if i % 2 == 0 else user_b
            await insert_encrypted(backend, key, "conv-1", sender, f"message {i}")

        messages = await pipeline.fetch_history()

        assert [m.content for m in messages] == [f"message {i}" for i in range(5)]
        assert [m.content for m in pipeline.messages] == [f"message {i}" for i in range(5)]

    async def test_undecryptable_row_gets_placeholder(self, backend, user_a, user_b):
        """Test that one bad row does not hide the rest of the history."""
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")

        await insert_encrypted(backend, key, "conv-1", user_a, "before")
        await insert_encrypted(backend, crypto.generate_key(), "conv-1", user_b, "foreign key")
        await insert_encrypted(backend, key, "conv-1", user_b, "after")

        messages = await pipeline.fetch_history()

        assert [m.content for m in messages] == ["before", "[Unable to decrypt]", "after"]
        assert [m.decryption_failed for m in messages] == [False, True, False]
        assert pipeline.get_statistics()["undecryptable_count"] == 1

    async def test_messages_changed_callback(self, backend, user_a):
        """Test that applied fetches are reported to the UI callback."""
        pipeline = await open_view(backend, user_a)
        seen = []
        pipeline.on_messages_changed = seen.append

        await insert_encrypted(backend, pipeline.bootstrap.get_resolved("conv-1"), "conv-1", user_a, "hi")
        await pipeline.fetch_history()

        assert len(seen) == 1
        assert seen[0][0].content == "hi"


@pytest.mark.asyncio
class TestSend:
    """Tests for sending messages."""

    async def test_send_persists_ciphertext(self, backend, user_a):
        """Test that only ciphertext reaches the backend."""
        pipeline = await open_view(backend, user_a)

        record = await pipeline.send("hello")
        await pipeline.wait_idle()

        stored = await backend.get_message(record.id)
        assert stored.sender_id == user_a
        assert "hello" not in stored.encrypted_content
        assert len(base64.b64decode(stored.iv)) == 12
        assert [m.content for m in pipeline.messages] == ["hello"]
        assert pipeline.messages[0].is_own(user_a)
        assert pipeline.mutations["send"].status == MutationStatus.SUCCESS

    async def test_send_passes_through_sending_state(self, backend, user_a):
        """Test that a send moves the view to SENDING and back."""
        pipeline = await open_view(backend, user_a)
        changes = []
        pipeline.on_state_change = lambda old, new: changes.append(new)

        await pipeline.send("hello")

        assert changes[:2] == [ViewState.SENDING, ViewState.READY]
        assert pipeline.state == ViewState.READY
        await pipeline.wait_idle()

    async def test_blank_content_rejected(self, backend, user_a):
        """Test that empty and whitespace-only messages are refused."""
        pipeline = await open_view(backend, user_a)

        for text in ("", "   \n\t"):
            with pytest.raises(MessageError) as exc_info:
                await pipeline.send(text)
            assert exc_info.value.code == ErrorCode.E302_EMPTY_CONTENT

        assert await backend.list_messages("conv-1") == []
        assert pipeline.mutations["send"].status == MutationStatus.ERROR

    async def test_oversized_content_rejected(self, backend, user_a):
        """Test the message size limit."""
        await backend.create_conversation("conv-1")
        pipeline = MessagePipeline(
            "conv-1", user_a, backend, KeyBootstrap(backend, KeyStore()), max_message_size=10
        )
        await pipeline.open()

        with pytest.raises(MessageError) as exc_info:
            await pipeline.send("x" * 11)
        assert exc_info.value.code == ErrorCode.E306_MESSAGE_TOO_LARGE

        await pipeline.send("x" * 10)
        await pipeline.wait_idle()

    async def test_send_without_identity(self, backend):
        """Test that a signed-out view cannot send."""
        pipeline = await open_view(backend, None)

        with pytest.raises(NotReadyError):
            await pipeline.send("hello")

    async def test_failed_send_keeps_input(self, user_a):
        """Test that a rejected write surfaces and keeps the text for resubmission."""
        backend = RejectingBackend()
        pipeline = await open_view(backend, user_a)

        with pytest.raises(PersistError) as exc_info:
            await pipeline.send("do not lose me")

        assert isinstance(exc_info.value.__cause__, BackendError)
        state = pipeline.mutations["send"]
        assert state.status == MutationStatus.ERROR
        assert state.pending_input == "do not lose me"
        assert isinstance(state.error, PersistError)
        assert pipeline.state == ViewState.READY
        assert pipeline.messages == []

    async def test_overlapping_sends_keep_failed_input(self, user_a):
        """Test that an earlier send finishing never erases the input of a later failed one."""
        backend = RejectAfterBackend(accepted=1)
        pipeline = await open_view(backend, user_a)

        first, second = await asyncio.gather(
            pipeline.send("first"), pipeline.send("please keep me"), return_exceptions=True
        )

        assert first.sender_id == user_a
        assert isinstance(second, PersistError)
        state = pipeline.mutations["send"]
        assert state.status == MutationStatus.ERROR
        assert state.pending_input == "please keep me"
        assert state.error is second
        assert not pipeline.is_mutation_pending("send")

    async def test_latest_send_stays_published_while_older_one_settles(self, user_a):
        """Test that the most recent call's state is the one exposed while both run."""
        backend = InMemoryBackend()
        pipeline = await open_view(backend, user_a)

        older = asyncio.ensure_future(pipeline.send("older"))
        await asyncio.sleep(0)
        newer = asyncio.ensure_future(pipeline.send("newer"))
        await asyncio.sleep(0)

        assert pipeline.mutations["send"].pending_input == "newer"
        assert pipeline.is_mutation_pending("send")

        await asyncio.gather(older, newer)
        await pipeline.wait_idle()

        assert pipeline.mutations["send"].status == MutationStatus.SUCCESS
        assert pipeline.mutations["send"].pending_input is None
        assert not pipeline.is_mutation_pending("send")
        assert [m.content for m in pipeline.messages] == ["older", "newer"]


@pytest.mark.asyncio
class TestEditDelete:
    """Tests for ownership-scoped edits and deletes."""

    async def test_edit_own_message(self, backend, user_a):
        """Test that an edit re-encrypts with a fresh nonce and marks the row."""
        pipeline = await open_view(backend, user_a)
        record = await pipeline.send("first draft")

        await pipeline.edit(record.id, "final text")
        await pipeline.wait_idle()

        stored = await backend.get_message(record.id)
        assert stored.iv != record.iv
        assert stored.edited_at is not None
        assert pipeline.messages[0].content == "final text"
        assert pipeline.messages[0].is_edited
        assert pipeline.mutations["edit"].status == MutationStatus.SUCCESS

    async def test_edit_foreign_message_rejected(self, backend, user_a, user_b):
        """Test that a non-owner edit fails and leaves the row untouched."""
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")
        record = await insert_encrypted(backend, key, "conv-1", user_b, "bob wrote this")

        with pytest.raises(AuthorizationError) as exc_info:
            await pipeline.edit(record.id, "alice was here")
        assert exc_info.value.code == ErrorCode.E304_NOT_MESSAGE_OWNER

        stored = await backend.get_message(record.id)
        assert stored.encrypted_content == record.encrypted_content
        assert stored.iv == record.iv
        assert stored.edited_at is None
        assert pipeline.mutations["edit"].status == MutationStatus.ERROR

    async def test_edit_missing_message(self, backend, user_a):
        """Test editing an id that does not exist."""
        pipeline = await open_view(backend, user_a)

        with pytest.raises(MessageNotFoundError):
            await pipeline.edit("no-such-message", "text")

    async def test_edit_message_of_other_conversation(self, backend, user_a):
        """Test that a view cannot edit rows of another conversation."""
        other = await open_view(backend, user_a, "conv-2")
        record = await other.send("elsewhere")
        await other.wait_idle()

        pipeline = await open_view(backend, user_a, "conv-1")
        with pytest.raises(MessageNotFoundError):
            await pipeline.edit(record.id, "moved")

    async def test_edit_rejects_blank_content(self, backend, user_a):
        """Test that an edit cannot blank a message."""
        pipeline = await open_view(backend, user_a)
        record = await pipeline.send("keep me")

        with pytest.raises(MessageError):
            await pipeline.edit(record.id, "  ")
        await pipeline.wait_idle()

    async def test_delete_own_message(self, backend, user_a):
        """Test deleting one's own message."""
        pipeline = await open_view(backend, user_a)
        record = await pipeline.send("short lived")
        await pipeline.wait_idle()

        await pipeline.delete(record.id)
        await pipeline.wait_idle()

        assert await backend.get_message(record.id) is None
        assert pipeline.messages == []
        assert pipeline.mutations["delete"].status == MutationStatus.SUCCESS

    async def test_delete_foreign_message_rejected(self, backend, user_a, user_b):
        """Test that a non-owner delete fails and the row survives."""
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")
        record = await insert_encrypted(backend, key, "conv-1", user_b, "bob wrote this")

        with pytest.raises(AuthorizationError):
            await pipeline.delete(record.id)

        assert await backend.get_message(record.id) is not None

    async def test_delete_missing_message(self, backend, user_a):
        """Test deleting an id that does not exist."""
        pipeline = await open_view(backend, user_a)

        with pytest.raises(MessageNotFoundError):
            await pipeline.delete("no-such-message")


@pytest.mark.asyncio
class TestRefreshOrdering:
    """Tests for fetch sequencing, refresh coalescing and close."""

    async def test_stale_fetch_is_discarded(self, user_a):
        """Test that an older response arriving late does not overwrite newer state."""
        backend = GatedBackend()
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")

        gate = backend.hold_next_fetch()
        slow = asyncio.ensure_future(pipeline.fetch_history())
        await backend.waiting.wait()

        await insert_encrypted(backend, key, "conv-1", user_a, "newer")
        await pipeline.fetch_history()
        assert [m.content for m in pipeline.messages] == ["newer"]

        gate.set()
        stale = await slow

        assert stale == []
        assert [m.content for m in pipeline.messages] == ["newer"]
        assert pipeline.discarded_fetches == 1

    async def test_burst_of_requests_is_coalesced(self, backend, user_a):
        """Test that requests made before a refresh starts share it."""
        pipeline = await open_view(backend, user_a)
        before = pipeline.fetch_count

        for _ in range(5):
            pipeline.schedule_refresh()
        await pipeline.wait_idle()

        assert pipeline.fetch_count == before + 1
        assert pipeline.refresh_requests == 5

    async def test_requests_during_refresh_trigger_one_follow_up(self, user_a):
        """Test that requests arriving mid-refresh collapse into one more fetch."""
        backend = GatedBackend()
        pipeline = await open_view(backend, user_a)
        before = pipeline.fetch_count

        gate = backend.hold_next_fetch()
        pipeline.schedule_refresh()
        await backend.waiting.wait()

        for _ in range(3):
            pipeline.schedule_refresh()
        gate.set()
        await pipeline.wait_idle()

        assert pipeline.fetch_count == before + 2

    async def test_refresh_before_key_is_ignored(self, backend, user_a):
        """Test that an unresolved view does not fetch."""
        pipeline = MessagePipeline("conv-1", user_a, backend, KeyBootstrap(backend, KeyStore()))

        pipeline.schedule_refresh()
        await pipeline.wait_idle()

        assert pipeline.fetch_count == 0

    async def test_close_cancels_in_flight_refresh(self, user_a):
        """Test that a closed view never applies a late response."""
        backend = GatedBackend()
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")
        await insert_encrypted(backend, key, "conv-1", user_a, "too late")

        gate = backend.hold_next_fetch()
        pipeline.schedule_refresh()
        await backend.waiting.wait()

        await pipeline.close()
        gate.set()
        await pipeline.wait_idle()

        assert pipeline.state == ViewState.CLOSED
        assert pipeline.messages == []

    async def test_direct_fetch_after_close_is_dropped(self, user_a):
        """Test that a fetch still running at close time is not applied."""
        backend = GatedBackend()
        pipeline = await open_view(backend, user_a)
        key = pipeline.bootstrap.get_resolved("conv-1")
        await insert_encrypted(backend, key, "conv-1", user_a, "too late")

        gate = backend.hold_next_fetch()
        fetch = asyncio.ensure_future(pipeline.fetch_history())
        await backend.waiting.wait()

        await pipeline.close()
        gate.set()
        await fetch

        assert pipeline.messages == []
        assert pipeline.discarded_fetches == 1

    async def test_closed_view_rejects_operations(self, backend, user_a):
        """Test operations on a closed view, and that close is idempotent."""
        pipeline = await open_view(backend, user_a)

        await pipeline.close()
        await pipeline.close()

        assert pipeline.is_key_ready is False
        with pytest.raises(NotReadyError) as exc_info:
            await pipeline.send("hello")
        assert exc_info.value.code == ErrorCode.E307_VIEW_CLOSED
        with pytest.raises(NotReadyError):
            await pipeline.open()
        with pytest.raises(NotReadyError):
            await pipeline.delete("any")
