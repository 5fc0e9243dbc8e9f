"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_email(email: str | None) -> str:
    """Keep enough of an address to correlate logs without storing it whole."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def build_log_context(
    *,
    account_id: str | None = None,
    account_email: str | None = None,
    space_id: str | None = None,
    external_user_id: str | None = None,
    sync_run_id: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if account_id:
        context["account_id"] = account_id
    if account_email:
        context["account_email"] = mask_email(account_email)
    if space_id:
        context["space_id"] = space_id
    if external_user_id:
        context["external_user_id"] = external_user_id
    if sync_run_id:
        context["sync_run_id"] = sync_run_id
    return context
