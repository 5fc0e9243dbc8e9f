"""Service account credentials with domain-wide delegation."""

from __future__ import annotations

import threading

from google.auth.transport import requests as google_requests
from google.oauth2 import service_account

from chatsync.core.config import settings

CHAT_SCOPES = (
    "https://www.googleapis.com/auth/chat.spaces.readonly",
    "https://www.googleapis.com/auth/chat.memberships.readonly",
    "https://www.googleapis.com/auth/chat.messages.readonly",
)
DIRECTORY_SCOPES = ("https://www.googleapis.com/auth/admin.directory.user.readonly",)


class GoogleCredentialsError(RuntimeError):
    """Service account is not configured or token refresh failed."""

    pass


_cache_lock = threading.Lock()
_credentials_cache: dict[tuple[str, tuple[str, ...]], service_account.Credentials] = {}


def _load_credentials(scopes: tuple[str, ...], subject: str) -> service_account.Credentials:
    if not settings.GOOGLE_SERVICE_ACCOUNT_FILE:
        raise GoogleCredentialsError("GOOGLE_SERVICE_ACCOUNT_FILE not configured")
    try:
        return service_account.Credentials.from_service_account_file(
            settings.GOOGLE_SERVICE_ACCOUNT_FILE,
            scopes=list(scopes),
            subject=subject,
        )
    except (OSError, ValueError) as exc:
        raise GoogleCredentialsError(f"Invalid service account file: {exc}") from exc


def delegated_access_token(scopes: tuple[str, ...], subject: str) -> str:
    """
    Access token for the service account acting as `subject`.

    Credentials are cached per (subject, scopes) and refreshed when expired.
    """
    key = (subject.lower(), tuple(scopes))
    with _cache_lock:
        credentials = _credentials_cache.get(key)
        if credentials is None:
            credentials = _load_credentials(tuple(scopes), subject)
            _credentials_cache[key] = credentials
        if not credentials.valid:
            try:
                credentials.refresh(google_requests.Request())
            except Exception as exc:
                raise GoogleCredentialsError(f"Token refresh failed for {subject}: {exc}") from exc
        return credentials.token


def directory_subject(account_email: str) -> str:
    """Admin identity used for directory reads (falls back to the account itself)."""
    return settings.GOOGLE_DIRECTORY_SUBJECT or account_email
