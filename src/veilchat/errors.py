"""
VeilChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the VeilChat core. Each error has a unique code for logging and debugging.

Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all VeilChat error codes."""

    # General Errors (E001-E099)
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E105_INVALID_NONCE = "E105"

    # Key Management Errors (E200-E299)
    E200_KEY_ERROR = "E200"
    E201_KEY_BOOTSTRAP_FAILED = "E201"
    E202_KEY_NOT_PUBLISHED = "E202"
    E203_KEY_STORE_LOAD_FAILED = "E203"
    E204_KEY_STORE_SAVE_FAILED = "E204"

    # Message Errors (E300-E399)
    E300_MESSAGE_ERROR = "E300"
    E301_NOT_READY = "E301"
    E302_EMPTY_CONTENT = "E302"
    E303_MESSAGE_NOT_FOUND = "E303"
    E304_NOT_MESSAGE_OWNER = "E304"
    E305_PERSIST_FAILED = "E305"
    E306_MESSAGE_TOO_LARGE = "E306"
    E307_VIEW_CLOSED = "E307"

    # Backend Errors (E400-E499)
    E400_BACKEND_ERROR = "E400"
    E401_CONVERSATION_NOT_FOUND = "E401"
    E402_WRITE_FAILED = "E402"
    E403_READ_FAILED = "E403"
    E404_SUBSCRIPTION_FAILED = "E404"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class VeilChatError(Exception):
    """Base exception class for all VeilChat errors.

    All custom exceptions in VeilChat inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a VeilChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(VeilChatError):
    """Exception raised for cryptographic operation failures.

    This includes encryption, key generation and key import/export.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CryptoError):
    """Exception raised when a ciphertext cannot be authenticated or decoded.

    Raised for a failed GCM tag check, a key or nonce of the wrong size,
    malformed base64, or plaintext that is not valid UTF-8.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyManagementError(VeilChatError):
    """Exception raised for conversation key lifecycle failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_KEY_ERROR,
        message: str = "Key management operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyBootstrapError(KeyManagementError):
    """Exception raised when no authoritative conversation key can be resolved."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_KEY_BOOTSTRAP_FAILED,
        message: str = "Key bootstrap failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyStoreError(KeyManagementError):
    """Exception raised when the local key cache cannot be read or written."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E204_KEY_STORE_SAVE_FAILED,
        message: str = "Key store operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MessageError(VeilChatError):
    """Exception raised for message pipeline failures.

    This includes invalid content and failed mutations.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_MESSAGE_ERROR,
        message: str = "Message operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotReadyError(MessageError):
    """Raised when the conversation key is unresolved or the sender identity is missing."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E301_NOT_READY,
        message: str = "Conversation is not ready",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PersistError(MessageError):
    """Raised when the backend rejects a message write. Never retried automatically."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E305_PERSIST_FAILED,
        message: str = "Failed to persist message",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthorizationError(MessageError):
    """Raised when the caller does not own the message being edited or deleted."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E304_NOT_MESSAGE_OWNER,
        message: str = "Message belongs to another sender",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MessageNotFoundError(MessageError):
    """Raised when an edit or delete targets a message that does not exist."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E303_MESSAGE_NOT_FOUND,
        message: str = "Message not found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class BackendError(VeilChatError):
    """Exception raised for backend store failures.

    This includes reads, writes and change-feed subscriptions.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_BACKEND_ERROR,
        message: str = "Backend operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConversationNotFoundError(BackendError):
    """Raised when a conversation id has no backend record."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E401_CONVERSATION_NOT_FOUND,
        message: str = "Conversation not found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(VeilChatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
