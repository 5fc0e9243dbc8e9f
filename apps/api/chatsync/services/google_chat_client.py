"""Google Chat + Admin Directory REST client for one account.

Implements the remote chat source used by the synchronizer. Every request goes
through the process-wide outbound limiter and uses the configured timeout;
there is no retry beyond following page tokens.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

import httpx

from chatsync.core.concurrency import outbound_limiter
from chatsync.core.config import settings
from chatsync.services import google_credentials
from chatsync.services.google_credentials import CHAT_SCOPES, DIRECTORY_SCOPES
from chatsync.services.remote_source import (
    DirectoryUser,
    RemoteChatError,
    RemoteMember,
    RemoteMessage,
    RemoteSpace,
)
from chatsync.utils.normalization import format_remote_timestamp

logger = logging.getLogger(__name__)

CHAT_API_BASE = "https://chat.googleapis.com/v1"
DIRECTORY_USERS_URL = "https://admin.googleapis.com/admin/directory/v1/users"

TokenProvider = Callable[[tuple[str, ...], str], str]


class GoogleChatClient:
    """Chat reads impersonate the account; directory reads impersonate the admin subject."""

    def __init__(
        self,
        account_email: str,
        *,
        http_client: httpx.Client | None = None,
        token_provider: TokenProvider | None = None,
        page_size: int | None = None,
    ):
        self.account_email = account_email
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=settings.CHAT_API_TIMEOUT_SECONDS)
        self._token_provider = token_provider or google_credentials.delegated_access_token
        self._page_size = page_size or settings.CHAT_API_PAGE_SIZE

    def __enter__(self) -> "GoogleChatClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _token(self, scopes: tuple[str, ...], subject: str) -> str:
        try:
            return self._token_provider(scopes, subject)
        except Exception as exc:
            raise RemoteChatError(f"Could not obtain access token for {subject}: {exc}") from exc

    def _get(self, url: str, *, access_token: str, params: dict | None = None) -> dict[str, Any]:
        with outbound_limiter:
            try:
                response = self._client.get(
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    params=params,
                    timeout=settings.CHAT_API_TIMEOUT_SECONDS,
                )
            except httpx.HTTPError as exc:
                raise RemoteChatError(f"Request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = None
            try:
                payload = response.json()
                detail = payload.get("error", {}).get("message")
            except Exception:
                detail = response.text
            raise RemoteChatError(
                f"Chat API error {response.status_code}: {detail or 'unknown error'}",
                status_code=response.status_code,
            )
        try:
            result = response.json()
        except ValueError as exc:
            raise RemoteChatError(f"Chat API returned invalid JSON from {url}") from exc
        if not isinstance(result, dict):
            raise RemoteChatError("Chat API response was not an object")
        return result

    def _chat_get(self, path: str, params: dict | None = None) -> dict[str, Any]:
        return self._get(
            f"{CHAT_API_BASE}/{path}",
            access_token=self._token(CHAT_SCOPES, self.account_email),
            params=params,
        )

    def _page_params(self, page_token: str | None, **extra: str) -> dict[str, Any]:
        return {
            "pageSize": self._page_size,
            **extra,
            **({"pageToken": page_token} if page_token else {}),
        }

    # ------------------------------------------------------------------
    # Remote source operations
    # ------------------------------------------------------------------

    def get_user(self, identifier: str) -> DirectoryUser | None:
        """Directory record by user key; 400/404 mean "no such user"."""
        user_key = identifier.strip()
        if user_key.startswith("users/"):
            # The directory addresses users by bare id or email.
            user_key = user_key.split("/", 1)[1]
        if not user_key:
            return None
        subject = google_credentials.directory_subject(self.account_email)
        try:
            payload = self._get(
                f"{DIRECTORY_USERS_URL}/{user_key}",
                access_token=self._token(DIRECTORY_SCOPES, subject),
            )
        except RemoteChatError as exc:
            if exc.status_code in (400, 404):
                return None
            raise
        name = payload.get("name") or {}
        return DirectoryUser(
            user_id=str(payload["id"]) if payload.get("id") else None,
            primary_email=payload.get("primaryEmail"),
            full_name=name.get("fullName") if isinstance(name, dict) else None,
        )

    def list_spaces(self, page_token: str | None = None) -> tuple[list[RemoteSpace], str | None]:
        payload = self._chat_get("spaces", self._page_params(page_token))
        spaces = [
            RemoteSpace(
                space_id=str(item["name"]),
                space_type=str(item.get("spaceType") or item.get("type") or "SPACE"),
                display_name=str(item.get("displayName") or ""),
            )
            for item in payload.get("spaces") or []
            if item.get("name")
        ]
        next_page_token = payload.get("nextPageToken")
        return spaces, str(next_page_token) if next_page_token else None

    def list_members(
        self, space_id: str, page_token: str | None = None
    ) -> tuple[list[RemoteMember], str | None]:
        payload = self._chat_get(f"{space_id}/members", self._page_params(page_token))
        members: list[RemoteMember] = []
        for item in payload.get("memberships") or []:
            member = item.get("member") or {}
            if not member.get("name") or member.get("type", "HUMAN") != "HUMAN":
                continue
            members.append(
                RemoteMember(
                    external_user_id=str(member["name"]),
                    display_name=member.get("displayName") or None,
                    email=member.get("email") or None,
                )
            )
        next_page_token = payload.get("nextPageToken")
        return members, str(next_page_token) if next_page_token else None

    def list_messages(
        self,
        space_id: str,
        page_token: str | None = None,
        *,
        created_after: datetime | None = None,
    ) -> tuple[list[RemoteMessage], str | None]:
        extra = {"orderBy": "createTime asc"}
        if created_after is not None:
            extra["filter"] = f'createTime > "{format_remote_timestamp(created_after)}"'
        payload = self._chat_get(f"{space_id}/messages", self._page_params(page_token, **extra))
        messages: list[RemoteMessage] = []
        for item in payload.get("messages") or []:
            sender = item.get("sender") or {}
            if not item.get("name") or not sender.get("name") or not item.get("createTime"):
                logger.debug("Skipping malformed message in %s", space_id)
                continue
            messages.append(
                RemoteMessage(
                    message_id=str(item["name"]),
                    text=str(item.get("text") or ""),
                    create_time=str(item["createTime"]),
                    sender_external_id=str(sender["name"]),
                )
            )
        next_page_token = payload.get("nextPageToken")
        return messages, str(next_page_token) if next_page_token else None


def build_remote_source(account_email: str) -> GoogleChatClient:
    """Default remote factory used by routers, CLI and scheduled jobs."""
    return GoogleChatClient(account_email)
