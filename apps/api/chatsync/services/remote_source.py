"""Remote chat source interface + payload shapes."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, TypedDict


class RemoteChatError(Exception):
    """Remote platform call failed (transport, HTTP status, or payload shape)."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryUser(TypedDict):
    user_id: str | None
    primary_email: str | None
    full_name: str | None


class RemoteSpace(TypedDict):
    space_id: str
    space_type: str
    display_name: str


class RemoteMember(TypedDict):
    external_user_id: str
    display_name: str | None
    email: str | None


class RemoteMessage(TypedDict):
    message_id: str
    text: str
    create_time: str
    sender_external_id: str


class DirectoryLookup(Protocol):
    def get_user(self, identifier: str) -> DirectoryUser | None:
        """Directory record for an identifier, or None when unknown."""


class RemoteChatSource(DirectoryLookup, Protocol):
    """Everything one account sync consumes from the platform."""

    def list_spaces(self, page_token: str | None = None) -> tuple[list[RemoteSpace], str | None]:
        """One page of spaces visible to the account plus the next page token."""

    def list_members(
        self, space_id: str, page_token: str | None = None
    ) -> tuple[list[RemoteMember], str | None]:
        """One page of human members of a space."""

    def list_messages(
        self,
        space_id: str,
        page_token: str | None = None,
        *,
        created_after: datetime | None = None,
    ) -> tuple[list[RemoteMessage], str | None]:
        """One page of messages, oldest first, optionally only those created after a time."""
