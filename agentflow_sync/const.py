"""Constants shared by the AgentFlow storage and sync engine."""

from __future__ import annotations

from typing import Final

DOMAIN: Final = "agentflow_sync"

# Option keys accepted by :class:`agentflow_sync.config.SyncConfig`
CONF_CLIENT_ID: Final = "client_id"
CONF_CLIENT_SECRET: Final = "client_secret"
CONF_REFRESH_TOKEN: Final = "refresh_token"
CONF_DATABASE_PATH: Final = "database_path"
CONF_TOKEN_PATH: Final = "token_path"
CONF_APP_FOLDER: Final = "app_folder"
CONF_DRIVE_BASE_URL: Final = "drive_base_url"
CONF_DRIVE_UPLOAD_URL: Final = "drive_upload_url"
CONF_TOKEN_URL: Final = "token_url"
CONF_REVOKE_URL: Final = "revoke_url"
CONF_DRAIN_INTERVAL: Final = "drain_interval"
CONF_DRAIN_DELAY: Final = "drain_delay"
CONF_TOKEN_CHECK_INTERVAL: Final = "token_check_interval"
CONF_REFRESH_TIMEOUT: Final = "refresh_timeout"
CONF_INLINE_THRESHOLD: Final = "inline_threshold"

DEFAULT_DATABASE_PATH: Final = "agentflow.db"
DEFAULT_APP_FOLDER: Final = "AgentFlowUI"
DEFAULT_DRIVE_BASE_URL: Final = "https://www.googleapis.com/drive/v3"
DEFAULT_DRIVE_UPLOAD_URL: Final = "https://www.googleapis.com/upload/drive/v3"
DEFAULT_TOKEN_URL: Final = "https://oauth2.googleapis.com/token"
DEFAULT_REVOKE_URL: Final = "https://oauth2.googleapis.com/revoke"
DRIVE_SCOPE: Final = "https://www.googleapis.com/auth/drive.file"

# Seconds
DEFAULT_DRAIN_INTERVAL: Final = 5 * 60
DEFAULT_DRAIN_DELAY: Final = 0.1
DEFAULT_TOKEN_CHECK_INTERVAL: Final = 5 * 60
DEFAULT_REFRESH_TIMEOUT: Final = 5.0

TOKEN_EXPIRY_BUFFER_SECONDS: Final = 5 * 60
PROACTIVE_REFRESH_WINDOW_SECONDS: Final = 15 * 60
ACTIVITY_WINDOW_SECONDS: Final = 10 * 60
ACTIVITY_THROTTLE_SECONDS: Final = 60

ACTIVITY_SIGNALS: Final = frozenset({"click", "keypress", "mousemove", "scroll", "touchstart"})

# Inline payloads larger than this many bytes are never persisted
DEFAULT_INLINE_THRESHOLD: Final = 64 * 1024

STORE_CONVERSATIONS: Final = "conversations"
STORE_ARTIFACTS: Final = "artifacts"
STORE_SYNC_QUEUE: Final = "syncQueue"
STORE_METADATA: Final = "metadata"
STORES: Final = (STORE_CONVERSATIONS, STORE_ARTIFACTS, STORE_SYNC_QUEUE, STORE_METADATA)

CONVERSATIONS_FOLDER: Final = "conversations"
ARTIFACTS_FOLDER: Final = "artifacts"
FOLDER_MIME_TYPE: Final = "application/vnd.google-apps.folder"
DOCUMENT_MIME_TYPE: Final = "application/vnd.google-apps.document"

REFERENCE_SCHEME: Final = "gdrive"

QUEUE_CONVERSATION: Final = "conversation"
QUEUE_DELETE_CONVERSATION: Final = "delete-conversation"

AUDIO_PLACEHOLDER: Final = "[Audio data not saved to conserve storage]"
IMAGE_PLACEHOLDER: Final = "[Large image data removed to save storage space]"
FILE_PLACEHOLDER: Final = "[File data not saved to conserve storage]"
