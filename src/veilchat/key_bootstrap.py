"""
VeilChat - Conversation key bootstrap.

Resolves the single authoritative key for a conversation, even when both
participants open a brand new conversation at the same moment.

Resolution order:
1. Read the key stored on the backend conversation record. If present it
   wins, and the local cache is brought in line with it.
2. Otherwise reuse a locally cached key that was generated earlier but
   never published, or generate a fresh one.
3. Publish with a conditional update that only writes when the stored key
   is still null.
4. Re-read the record and adopt whatever it now holds. A participant whose
   write lost the race therefore switches to the winner's key instead of
   keeping its own.

This is convergence through a conditional write plus a re-read, not a lock.
It is only as strong as the backend's "set if null" guarantee; both
backends shipped with VeilChat apply it atomically.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

from . import crypto
from .backend import Backend
from .constants import RESOLVED_KEY_CACHE_SIZE
from .errors import CryptoError, ErrorCode, KeyBootstrapError
from .key_store import KeyStore

logger = logging.getLogger(__name__)


class KeyBootstrap:
    """Resolves and caches conversation keys for one client."""

    def __init__(self, backend: Backend, key_store: KeyStore):
        """
        Args:
            backend: Shared store holding the authoritative keys
            key_store: This device's key cache
        """
        self.backend = backend
        self.key_store = key_store
        # Per-conversation locks live only while a resolution holds or awaits them
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._resolved: "OrderedDict[str, bytes]" = OrderedDict()
        self.resolve_count = 0

    def _acquire_lock_ref(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        return lock

    def _release_lock_ref(self, conversation_id: str) -> None:
        users = self._lock_users.get(conversation_id, 0) - 1
        if users > 0:
            self._lock_users[conversation_id] = users
            return
        self._lock_users.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)

    def _remember(self, conversation_id: str, key: bytes) -> None:
        self._resolved[conversation_id] = key
        self._resolved.move_to_end(conversation_id)
        while len(self._resolved) > RESOLVED_KEY_CACHE_SIZE:
            self._resolved.popitem(last=False)

    def get_resolved(self, conversation_id: str) -> Optional[bytes]:
        """Return a key already resolved in this process, if any."""
        return self._resolved.get(conversation_id)

    async def resolve(self, conversation_id: str) -> bytes:
        """
        Resolve the authoritative key for a conversation.

        Concurrent calls for the same conversation within this client run
        one at a time; the lock is dropped once no call needs it.

        Args:
            conversation_id: Conversation to resolve

        Returns:
            Raw 32-byte key agreed on by every participant

        Raises:
            KeyBootstrapError: If the conversation does not exist, the stored
                key is unusable, or no key could be published
            BackendError: If the backend cannot be reached
        """
        lock = self._acquire_lock_ref(conversation_id)
        try:
            async with lock:
                key = await self._resolve_locked(conversation_id)
                self._remember(conversation_id, key)
                self.resolve_count += 1
                return key
        finally:
            self._release_lock_ref(conversation_id)

    async def _resolve_locked(self, conversation_id: str) -> bytes:
        stored = await self._read_stored_key(conversation_id)
        if stored is not None:
            logger.debug(f"Using published key for conversation {conversation_id}")
            return await self._adopt(conversation_id, stored)

        candidate = await self._local_candidate(conversation_id)
        wrote = await self.backend.set_encryption_key_if_unset(conversation_id, candidate)

        # Re-read regardless of the write outcome; the stored value is authoritative
        authoritative = await self._read_stored_key(conversation_id)
        if authoritative is None:
            raise KeyBootstrapError(
                ErrorCode.E202_KEY_NOT_PUBLISHED,
                "Conversation key was not persisted by the backend",
                {"conversation_id": conversation_id},
            )

        if authoritative != candidate:
            logger.info(
                f"Lost key publication race for conversation {conversation_id}, "
                "adopting the published key"
            )
        elif wrote:
            logger.info(f"Published new key for conversation {conversation_id}")

        return await self._adopt(conversation_id, authoritative)

    async def _read_stored_key(self, conversation_id: str) -> Optional[str]:
        conversation = await self.backend.get_conversation(conversation_id)
        if conversation is None:
            raise KeyBootstrapError(
                ErrorCode.E201_KEY_BOOTSTRAP_FAILED,
                "Conversation does not exist",
                {"conversation_id": conversation_id},
            )
        return conversation.encryption_key

    async def _local_candidate(self, conversation_id: str) -> str:
        """Return a cached unpublished key, or a freshly generated one."""
        cached = await self.key_store.get(conversation_id)
        if cached is not None:
            try:
                crypto.import_key(cached)
                logger.debug(f"Reusing unpublished cached key for {conversation_id}")
                return cached
            except CryptoError:
                logger.warning(f"Discarding malformed cached key for {conversation_id}")

        key = await crypto.generate_key_async()
        return crypto.export_key(key)

    async def _adopt(self, conversation_id: str, key_text: str) -> bytes:
        """Import the authoritative key and mirror it into the cache."""
        try:
            key = crypto.import_key(key_text)
        except CryptoError as e:
            raise KeyBootstrapError(
                ErrorCode.E201_KEY_BOOTSTRAP_FAILED,
                "Published conversation key is malformed",
                {"conversation_id": conversation_id},
            ) from e

        cached = await self.key_store.get(conversation_id)
        if cached is not None and cached != key_text:
            logger.warning(
                f"Cached key for conversation {conversation_id} differs from the "
                "published key, replacing it"
            )
        await self.key_store.put(conversation_id, key_text)
        return key

    async def forget(self, conversation_id: str) -> None:
        """Drop every local trace of a conversation's key."""
        self._resolved.pop(conversation_id, None)
        await self.key_store.remove(conversation_id)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get bootstrap statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "resolve_count": self.resolve_count,
            "active_locks": len(self._locks),
            "cached_keys": len(self._resolved),
        }
