"""
VeilChat - Encrypted conversation core

Client-side key lifecycle and message pipeline for end-to-end encrypted
conversations stored on a shared backend: per-conversation AES-256-GCM
keys, race-free key bootstrap, decrypted message views with ownership
checked edits and deletes, and realtime refresh on remote inserts.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .backend import Backend, ChangeEvent, InMemoryBackend, Subscription
from .client import ChatClient
from .config import Config
from .constants import APP_NAME, VERSION
from .conversations import ConversationService
from .errors import (
    AuthorizationError,
    BackendError,
    ConfigError,
    ConversationNotFoundError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    KeyBootstrapError,
    KeyManagementError,
    KeyStoreError,
    MessageError,
    MessageNotFoundError,
    NotReadyError,
    PersistError,
    VeilChatError,
)
from .key_bootstrap import KeyBootstrap
from .key_store import FileKeyStorage, KeyStore, MemoryKeyStorage
from .models import ConversationRecord, DecryptedMessage, MessageRecord, ParticipantRecord
from .pipeline import MessagePipeline, MutationState, MutationStatus, ViewState
from .realtime import RealtimeSyncBridge
from .sqlite_backend import SQLiteBackend

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthorizationError",
    "Backend",
    "BackendError",
    "ChangeEvent",
    "ChatClient",
    "Config",
    "ConfigError",
    "ConversationNotFoundError",
    "ConversationRecord",
    "ConversationService",
    "CryptoError",
    "DecryptedMessage",
    "DecryptionError",
    "ErrorCode",
    "FileKeyStorage",
    "InMemoryBackend",
    "KeyBootstrap",
    "KeyBootstrapError",
    "KeyManagementError",
    "KeyStore",
    "KeyStoreError",
    "MemoryKeyStorage",
    "MessageError",
    "MessageNotFoundError",
    "MessagePipeline",
    "MessageRecord",
    "MutationState",
    "MutationStatus",
    "NotReadyError",
    "ParticipantRecord",
    "PersistError",
    "RealtimeSyncBridge",
    "SQLiteBackend",
    "Subscription",
    "VeilChatError",
    "ViewState",
    "__license__",
    "__version__",
]
