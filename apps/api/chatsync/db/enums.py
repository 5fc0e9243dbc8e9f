"""Chat reconciliation enums."""

from enum import Enum


class ConversationKind(str, Enum):
    """Local conversation kind."""

    DIRECT = "DIRECT"
    GROUP = "GROUP"


class RemoteSpaceType(str, Enum):
    """Space types reported by the remote platform."""

    DIRECT_MESSAGE = "DIRECT_MESSAGE"
    GROUP_CHAT = "GROUP_CHAT"
    SPACE = "SPACE"


class IdentityProvenance(str, Enum):
    """How an identity was resolved."""

    REMOTE_DIRECTORY = "remote-directory"
    MEMBERSHIP_LIST = "membership-list"
    MESSAGE_AUTHORSHIP = "message-authorship"
    HEURISTIC_FALLBACK = "heuristic-fallback"
    MANUAL = "manual"


class SyncRunStatus(str, Enum):
    """Lifecycle of one reconciliation pass."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
