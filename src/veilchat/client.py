"""
VeilChat - Chat client.

Composition root for one signed-in user: owns the key cache, the key
bootstrap, the conversation service and the single active conversation
view with its realtime bridge.

Only one conversation view is live at a time. Opening another one tears
the previous view down first, cancelling its in-flight fetches so a late
response for the old conversation can never reach the new view.
"""

import logging
from typing import Iterable, List, Optional

from .backend import Backend
from .config import Config
from .conversations import ConversationService
from .errors import ErrorCode, NotReadyError
from .key_bootstrap import KeyBootstrap
from .key_store import FileKeyStorage, KeyStore
from .models import ConversationRecord, ConversationSummary
from .pipeline import MessagePipeline
from .realtime import RealtimeSyncBridge
from .sqlite_backend import SQLiteBackend
from .utils import setup_logging

logger = logging.getLogger(__name__)


class ChatClient:
    """Entry point the UI talks to."""

    def __init__(
        self,
        user_id: Optional[str],
        backend: Backend,
        key_store: Optional[KeyStore] = None,
        config: Optional[Config] = None,
    ):
        """
        Args:
            user_id: Authenticated user id, or None when signed out
            backend: Shared store
            key_store: Local key cache (in-memory when omitted)
            config: Loaded configuration (defaults when omitted)
        """
        self.user_id = user_id
        self.backend = backend
        self.key_store = key_store or KeyStore()
        self.config = config or Config()

        self.bootstrap = KeyBootstrap(backend, self.key_store)
        self.conversations = ConversationService(backend, self.bootstrap)

        self._pipeline: Optional[MessagePipeline] = None
        self._bridge: Optional[RealtimeSyncBridge] = None
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        user_id: Optional[str],
        backend: Optional[Backend] = None,
        configure_logging: bool = True,
    ) -> "ChatClient":
        """
        Build a client whose key cache lives in the configured data directory.

        Without an explicit backend, a SQLiteBackend is opened on the
        configured database file in the same directory. The ``veilchat``
        logger is set up from the ``[logging]`` section unless
        configure_logging is False, for hosts that manage logging themselves.
        """
        if configure_logging:
            setup_logging(config)
        data_dir = config.data_dir
        storage = FileKeyStorage(data_dir / config.get("storage", "key_store_filename"))
        if backend is None:
            backend = SQLiteBackend(data_dir / config.get("storage", "backend_db_filename"))
        return cls(user_id, backend, KeyStore(storage), config)

    @property
    def active_pipeline(self) -> Optional[MessagePipeline]:
        return self._pipeline

    @property
    def active_bridge(self) -> Optional[RealtimeSyncBridge]:
        return self._bridge

    async def open_conversation(self, conversation_id: str) -> MessagePipeline:
        """
        Make a conversation the active view.

        The previous view and its bridge are closed first, even if opening
        the new one fails. The realtime bridge subscribes before the first
        history fetch, so a message inserted while that fetch is in flight
        still triggers a refresh. A bootstrap failure leaves the new view
        installed in its UNRESOLVED state, with last_error set, closes the
        bridge and is raised to the caller.

        Returns:
            The new conversation view
        """
        if self._closed:
            raise NotReadyError(ErrorCode.E307_VIEW_CLOSED, "Chat client is closed")

        await self._close_active()

        pipeline = MessagePipeline(
            conversation_id,
            self.user_id,
            self.backend,
            self.bootstrap,
            placeholder=self.config.get("messages", "decryption_placeholder"),
            max_message_size=self.config.get("messages", "max_message_size"),
        )
        self._pipeline = pipeline

        bridge: Optional[RealtimeSyncBridge] = None
        if self.config.get("sync", "realtime_enabled", True):
            bridge = RealtimeSyncBridge(self.backend, pipeline)
            bridge.open()
            self._bridge = bridge

        try:
            await pipeline.open()
        except Exception:
            if bridge is not None:
                bridge.close()
                if self._bridge is bridge:
                    self._bridge = None
            raise

        logger.info(f"Opened conversation {conversation_id}")
        return pipeline

    async def _close_active(self) -> None:
        bridge, pipeline = self._bridge, self._pipeline
        self._bridge = None
        self._pipeline = None
        try:
            if bridge is not None:
                bridge.close()
        finally:
            if pipeline is not None:
                await pipeline.close()

    # Conversation management

    def _require_user(self) -> str:
        if not self.user_id:
            raise NotReadyError(message="No authenticated user")
        return self.user_id

    async def create_conversation(self, participant_ids: Iterable[str]) -> ConversationRecord:
        return await self.conversations.create_conversation(self._require_user(), participant_ids)

    async def list_conversations(self) -> List[ConversationSummary]:
        return await self.conversations.list_conversations(self._require_user())

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation, closing it first if it is the active view."""
        if self._pipeline is not None and self._pipeline.conversation_id == conversation_id:
            await self._close_active()
        await self.conversations.delete_conversation(conversation_id)

    async def close(self) -> None:
        """Tear down the active view. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._close_active()
        logger.debug("Chat client closed")

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
