"""Offline-first conversation storage with Google Drive sync."""

from .artifacts import AttachedArtifact, prepare_for_storage
from .auth import AuthTokenManager, GoogleOAuthClient, IdentityProvider, OAuthTokens
from .config import SyncConfig, load_config
from .errors import (
    AuthError,
    CorruptRecordError,
    InvalidTransitionError,
    LocalStoreError,
    NetworkError,
    NotFoundError,
    SyncStorageError,
)
from .events import EventBus, SyncEventType
from .local_cache import LocalCache
from .models import (
    ArtifactReference,
    ContentPart,
    Conversation,
    Message,
    PartKind,
    Role,
    merge_conversations,
)
from .orchestrator import StorageManager
from .remote_store import DriveRemoteStore
from .state import SyncMode, TokenPhase
from .sync_queue import DrainResult, SyncQueue
from .token_store import TokenStore

__all__ = [
    "StorageManager",
    "SyncConfig",
    "load_config",
    "AuthTokenManager",
    "GoogleOAuthClient",
    "IdentityProvider",
    "OAuthTokens",
    "TokenStore",
    "TokenPhase",
    "LocalCache",
    "DriveRemoteStore",
    "SyncQueue",
    "DrainResult",
    "SyncMode",
    "EventBus",
    "SyncEventType",
    "ArtifactReference",
    "AttachedArtifact",
    "ContentPart",
    "Conversation",
    "Message",
    "PartKind",
    "Role",
    "merge_conversations",
    "prepare_for_storage",
    "AuthError",
    "CorruptRecordError",
    "InvalidTransitionError",
    "LocalStoreError",
    "NetworkError",
    "NotFoundError",
    "SyncStorageError",
]
