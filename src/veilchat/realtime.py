"""
VeilChat - Realtime sync bridge.

Connects the backend change feed to an open conversation view. Each
message INSERT notification for the viewed conversation asks the pipeline
for a refresh; the notification payload itself is never trusted or
decrypted, the refresh re-reads everything from the backend.

Because the pipeline coalesces refresh requests, duplicate or bursty
deliveries cost at most one extra fetch.
"""

import logging
from typing import Optional

from .backend import Backend, ChangeEvent, Subscription
from .constants import TABLE_MESSAGES
from .pipeline import MessagePipeline

logger = logging.getLogger(__name__)


class RealtimeSyncBridge:
    """Keeps one conversation view in sync with remote inserts.

    Usage:
        async with RealtimeSyncBridge(backend, pipeline):
            ...
    """

    def __init__(self, backend: Backend, pipeline: MessagePipeline):
        self.backend = backend
        self.pipeline = pipeline
        self.conversation_id = pipeline.conversation_id
        self._subscription: Optional[Subscription] = None
        self.notifications_received = 0
        self.notifications_ignored = 0

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def open(self) -> None:
        """Subscribe to message inserts for this conversation."""
        if self.is_open:
            return
        self._subscription = self.backend.subscribe(
            TABLE_MESSAGES,
            {"conversation_id": self.conversation_id},
            self._on_insert,
        )
        logger.debug(f"Realtime sync opened for conversation {self.conversation_id}")

    def _on_insert(self, event: ChangeEvent) -> None:
        self.notifications_received += 1

        # A filter bug or a late delivery must never refresh the wrong view
        if event.record.get("conversation_id") != self.conversation_id or not self.is_open:
            self.notifications_ignored += 1
            logger.debug(f"Ignoring notification not meant for {self.conversation_id}")
            return

        self.pipeline.schedule_refresh()

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        if self._subscription is None:
            return
        self._subscription.close()
        self._subscription = None
        logger.debug(f"Realtime sync closed for conversation {self.conversation_id}")

    async def __aenter__(self) -> "RealtimeSyncBridge":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
