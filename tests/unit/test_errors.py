"""
Unit tests for veilchat.errors module.

Tests the error code catalogue and the default codes of each exception.
"""

import pytest

from veilchat.errors import (
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


class TestErrorCodes:
    """Test the error code catalogue."""

    def test_codes_are_unique_and_match_names(self):
        values = [code.value for code in ErrorCode]

        assert len(values) == len(set(values))
        for code in ErrorCode:
            assert code.name.startswith(code.value + "_")

    def test_crypto_codes(self):
        """Test that only codes some failure path raises are catalogued."""
        crypto_codes = {code.value for code in ErrorCode if code.value.startswith("E1")}

        assert crypto_codes == {"E100", "E102", "E103", "E104", "E105"}


class TestExceptions:
    """Test exception defaults and serialization."""

    @pytest.mark.parametrize(
        "error_class,base,code",
        [
            (CryptoError, VeilChatError, ErrorCode.E100_CRYPTO_ERROR),
            (DecryptionError, CryptoError, ErrorCode.E102_DECRYPTION_FAILED),
            (KeyManagementError, VeilChatError, ErrorCode.E200_KEY_ERROR),
            (KeyBootstrapError, KeyManagementError, ErrorCode.E201_KEY_BOOTSTRAP_FAILED),
            (KeyStoreError, KeyManagementError, ErrorCode.E204_KEY_STORE_SAVE_FAILED),
            (MessageError, VeilChatError, ErrorCode.E300_MESSAGE_ERROR),
            (NotReadyError, MessageError, ErrorCode.E301_NOT_READY),
            (MessageNotFoundError, MessageError, ErrorCode.E303_MESSAGE_NOT_FOUND),
            (AuthorizationError, MessageError, ErrorCode.E304_NOT_MESSAGE_OWNER),
            (PersistError, MessageError, ErrorCode.E305_PERSIST_FAILED),
            (BackendError, VeilChatError, ErrorCode.E400_BACKEND_ERROR),
            (ConversationNotFoundError, BackendError, ErrorCode.E401_CONVERSATION_NOT_FOUND),
            (ConfigError, VeilChatError, ErrorCode.E700_CONFIG_ERROR),
        ],
    )
    def test_default_code(self, error_class, base, code):
        error = error_class()

        assert isinstance(error, base)
        assert error.code == code
        assert str(error).startswith(f"[{code.value}]")

    def test_to_dict(self):
        error = PersistError(message="write refused", details={"conversation_id": "conv-1"})

        assert error.to_dict() == {
            "code": "E305",
            "message": "write refused",
            "details": {"conversation_id": "conv-1"},
        }
