"""
VeilChat - Backend record types.

Plain dataclasses for the three backend tables and for the decrypted view
of a message. Ciphertext and nonces travel as base64 text; plaintext only
ever lives in DecryptedMessage and is never written back to the backend.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ConversationRecord:
    """A row of the conversations table."""

    id: str
    created_at: str
    updated_at: str
    encryption_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class ParticipantRecord:
    """A row of the participants join table."""

    conversation_id: str
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class MessageRecord:
    """A row of the messages table."""

    id: str
    conversation_id: str
    sender_id: str
    encrypted_content: str
    iv: str
    created_at: str
    edited_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_row(cls, row: tuple) -> "MessageRecord":
        """Create from database row."""
        return cls(*row)

    def sort_key(self):
        """Stable total order: creation time, then id."""
        return (self.created_at, self.id)


@dataclass
class ConversationSummary:
    """A conversation together with its participant ids, for listing."""

    conversation: ConversationRecord
    participant_ids: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.conversation.id


@dataclass
class DecryptedMessage:
    """A message as presented to the UI."""

    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str
    edited_at: Optional[str] = None
    decryption_failed: bool = False

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    def is_own(self, user_id: str) -> bool:
        """Check if this message was sent by ``user_id``."""
        return self.sender_id == user_id

    @classmethod
    def from_record(
        cls, record: MessageRecord, content: str, decryption_failed: bool = False
    ) -> "DecryptedMessage":
        """Attach derived plaintext to a backend record."""
        return cls(
            id=record.id,
            conversation_id=record.conversation_id,
            sender_id=record.sender_id,
            content=content,
            created_at=record.created_at,
            edited_at=record.edited_at,
            decryption_failed=decryption_failed,
        )
