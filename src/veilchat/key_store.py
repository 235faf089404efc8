"""
VeilChat - Local conversation key cache.

The KeyStore keeps one base64 key encoding per conversation id on this
device. It is only a cache: the key stored on the backend conversation
record is authoritative, and key_bootstrap overwrites any cached value
that disagrees with it.

Storage is injectable. MemoryKeyStorage backs tests; FileKeyStorage keeps
a JSON file under the data directory so keys survive restarts.

The cache is not encrypted. Anyone who can read the file can read every
cached conversation. This is an accepted weakness of the static shared-key
model, not something this module tries to hide.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import aiofiles

from .errors import ErrorCode, KeyStoreError

logger = logging.getLogger(__name__)


class KeyStorage(ABC):
    """Persistence backing for a KeyStore."""

    @abstractmethod
    async def load(self) -> Dict[str, str]:
        """Return every stored conversation_id -> key encoding."""

    @abstractmethod
    async def save(self, keys: Dict[str, str]) -> None:
        """Replace the stored mapping with ``keys``."""


class MemoryKeyStorage(KeyStorage):
    """Process-local storage. Contents vanish with the object."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self.save_count = 0

    async def load(self) -> Dict[str, str]:
        return dict(self._data)

    async def save(self, keys: Dict[str, str]) -> None:
        self._data = dict(keys)
        self.save_count += 1


class FileKeyStorage(KeyStorage):
    """JSON file storage with atomic replace on every save."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> Dict[str, str]:
        """Load keys from file.

        A missing file is an empty cache. A corrupted file is logged and
        also treated as empty, since every entry can be re-read from the
        backend.

        Raises:
            KeyStoreError: If the file exists but cannot be read
        """
        if not self.path.exists():
            return {}

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            logger.error(f"Failed to read key store file: {e}")
            raise KeyStoreError(
                ErrorCode.E203_KEY_STORE_LOAD_FAILED,
                f"Cannot load key store: {e}",
                {"path": str(self.path)},
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted key store file: {e}")
            logger.warning("Starting with empty key cache due to corrupted file")
            return {}

        if not isinstance(data, dict):
            logger.warning("Key store file does not hold a mapping, ignoring it")
            return {}

        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    async def save(self, keys: Dict[str, str]) -> None:
        """Save keys to file asynchronously.

        Raises:
            KeyStoreError: If writing or renaming fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            json_data = json.dumps(keys, indent=2, sort_keys=True)

            # Write to temporary file first
            temp_file = f"{self.path}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)

            # Atomic rename
            os.replace(temp_file, self.path)
            logger.debug(f"Saved {len(keys)} conversation keys to {self.path}")

        except OSError as e:
            logger.error(f"Failed to save key store: {e}")
            raise KeyStoreError(
                ErrorCode.E204_KEY_STORE_SAVE_FAILED,
                f"Cannot save key store: {e}",
                {"path": str(self.path)},
            ) from e


class KeyStore:
    """Per-device cache of conversation keys.

    Owns an explicit conversation_id -> key encoding map, loaded lazily
    from its storage on first use and written through on every change.
    """

    def __init__(self, storage: Optional[KeyStorage] = None):
        """Initialize key store.

        Args:
            storage: Persistence backing (defaults to MemoryKeyStorage)
        """
        self.storage = storage or MemoryKeyStorage()
        self._keys: Dict[str, str] = {}
        self._loaded = False
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._keys = await self.storage.load()
            self._loaded = True
            logger.debug(f"Key store loaded with {len(self._keys)} entries")

    async def get(self, conversation_id: str) -> Optional[str]:
        """Return the cached key encoding for a conversation, if any."""
        async with self._get_lock():
            await self._ensure_loaded()
            return self._keys.get(conversation_id)

    async def put(self, conversation_id: str, key_text: str) -> None:
        """Cache a key encoding for a conversation."""
        async with self._get_lock():
            await self._ensure_loaded()
            if self._keys.get(conversation_id) == key_text:
                return
            self._keys[conversation_id] = key_text
            await self.storage.save(dict(self._keys))
            logger.debug(f"Cached key for conversation {conversation_id}")

    async def remove(self, conversation_id: str) -> None:
        """Drop the cached key for a conversation. Unknown ids are ignored."""
        async with self._get_lock():
            await self._ensure_loaded()
            if conversation_id not in self._keys:
                return
            del self._keys[conversation_id]
            await self.storage.save(dict(self._keys))
            logger.debug(f"Removed cached key for conversation {conversation_id}")

    async def conversation_ids(self):
        """Return the ids that currently have a cached key."""
        async with self._get_lock():
            await self._ensure_loaded()
            return sorted(self._keys)
