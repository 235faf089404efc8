"""
VeilChat - Global Constants and Configuration Values

This module defines all constants used throughout the VeilChat client core.
All magic numbers and configuration defaults are centralized here.

Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "VeilChat"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16  # GCM authentication tag appended to ciphertext
TEXT_ENCODING = "utf-8"

# Message Limits
MAX_TEXT_MESSAGE_SIZE = 100 * 1024  # 100 KB of UTF-8 plaintext

# Shown in place of a message that cannot be decrypted with the resolved key
DECRYPTION_PLACEHOLDER = "[Unable to decrypt]"

# Backend Tables
TABLE_CONVERSATIONS = "conversations"
TABLE_PARTICIPANTS = "participants"
TABLE_MESSAGES = "messages"

# Change Feed Event Type
EVENT_INSERT = "INSERT"

# Key Bootstrap
RESOLVED_KEY_CACHE_SIZE = 256  # Keys kept in memory per client, least recently resolved dropped first

# Message Pipeline
PIPELINE_STATE_HISTORY = 50  # Keep last N state transitions per view

# File Paths
DEFAULT_DATA_DIR = "~/.veilchat"
KEY_STORE_FILENAME = "conversation_keys.json"
BACKEND_DB_FILENAME = "veilchat.db"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "veilchat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Environment variable prefix for configuration overrides
ENV_PREFIX = "VEILCHAT"

# Feature Flags
FEATURE_REALTIME_SYNC = True
