"""
VeilChat - Conversation lifecycle.

Creates, lists and deletes conversations together with their participant
links. A new conversation gets its key generated and published right away,
so the first message never waits on bootstrap.
"""

import logging
import uuid
from typing import Iterable, List

from .backend import Backend
from .errors import ConversationNotFoundError, ErrorCode, VeilChatError
from .key_bootstrap import KeyBootstrap
from .models import ConversationRecord, ConversationSummary

logger = logging.getLogger(__name__)


class ConversationService:
    """Conversation CRUD on top of the backend and key bootstrap."""

    def __init__(self, backend: Backend, bootstrap: KeyBootstrap):
        self.backend = backend
        self.bootstrap = bootstrap

    async def create_conversation(
        self, creator_id: str, participant_ids: Iterable[str]
    ) -> ConversationRecord:
        """
        Create a conversation and link its participants.

        The creator is linked first, then every other participant in the
        given order. Repeated ids, including the creator's, are linked once.

        Args:
            creator_id: User creating the conversation
            participant_ids: Other users to add

        Returns:
            The conversation record with its published key

        Raises:
            VeilChatError: If creator_id is empty
            BackendError: If the backend rejects a write
        """
        if not creator_id:
            raise VeilChatError(
                ErrorCode.E002_INVALID_ARGUMENT, "A conversation needs a creator"
            )

        conversation = await self.backend.create_conversation(str(uuid.uuid4()))

        linked: List[str] = []
        for user_id in [creator_id, *participant_ids]:
            if not user_id or user_id in linked:
                continue
            await self.backend.add_participant(conversation.id, user_id)
            linked.append(user_id)

        await self.bootstrap.resolve(conversation.id)

        logger.info(f"Created conversation {conversation.id} with {len(linked)} participants")
        record = await self.backend.get_conversation(conversation.id)
        if record is None:
            raise ConversationNotFoundError(details={"conversation_id": conversation.id})
        return record

    async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        """Return the user's conversations, most recently updated first."""
        conversation_ids = await self.backend.list_conversation_ids_for_user(user_id)
        records = await self.backend.list_conversations(conversation_ids)

        summaries = []
        for record in records:
            links = await self.backend.list_participants(record.id)
            summaries.append(ConversationSummary(record, [link.user_id for link in links]))
        return summaries

    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation with its messages and participant links.

        Rows are removed children first. The local key cache entry goes last.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        if await self.backend.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(details={"conversation_id": conversation_id})

        messages = await self.backend.delete_messages(conversation_id)
        participants = await self.backend.delete_participants(conversation_id)
        await self.backend.delete_conversation(conversation_id)
        await self.bootstrap.forget(conversation_id)

        logger.info(
            f"Deleted conversation {conversation_id} "
            f"({messages} messages, {participants} participant links)"
        )
