"""Identity resolver - opaque platform user id -> best known identity.

Strategies run in a fixed order and stop at the first answer with confidence
>= ACCEPT_CONFIDENCE:

1. stored identity                       (kept as is)
2. directory lookup                      95  remote-directory
3. space membership with name or email   90  membership-list
4. heuristic                             30-35 / 20  heuristic-fallback

Every answer is written through the identity store, so the returned identity
is always the stored row and confidence never drops between calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from chatsync.core.config import settings
from chatsync.core.structured_logging import build_log_context
from chatsync.db.enums import IdentityProvenance
from chatsync.db.models import Account, Identity
from chatsync.services import identity_store
from chatsync.services.identity_store import IdentityCandidate
from chatsync.services.remote_source import DirectoryLookup, RemoteMember
from chatsync.utils.normalization import (
    canonical_user_id,
    email_local_part,
    extract_email_domain,
    is_long_numeric_id,
    normalize_email,
    numeric_suffix,
    short_user_label,
)

logger = logging.getLogger(__name__)

ACCEPT_CONFIDENCE = 70
DIRECTORY_CONFIDENCE = 95
MEMBERSHIP_CONFIDENCE = 90
HEURISTIC_MEMBER_CONFIDENCE = 35
HEURISTIC_CONFIDENCE = 30
UNKNOWN_SHAPE_CONFIDENCE = 20


@dataclass
class ResolutionContext:
    """Where an identifier was encountered."""

    account: Account | None = None
    space_id: str | None = None
    # Canonical user id -> remote membership entry for the space.
    members: dict[str, RemoteMember] = field(default_factory=dict)

    @property
    def account_id(self) -> UUID | None:
        return self.account.id if self.account is not None else None

    @property
    def owner_domain(self) -> str | None:
        if self.account is not None:
            domain = extract_email_domain(self.account.email)
            if domain:
                return domain
        return settings.workspace_domain


@dataclass(frozen=True)
class ResolvedIdentity:
    external_user_id: str
    display_name: str
    email: str | None
    email_domain: str | None
    confidence: int
    resolved_by: IdentityProvenance
    stored: bool = True

    @classmethod
    def from_identity(cls, identity: Identity) -> "ResolvedIdentity":
        return cls(
            external_user_id=identity.external_user_id,
            display_name=identity.display_name,
            email=identity.email,
            email_domain=identity.email_domain,
            confidence=identity.confidence,
            resolved_by=identity.resolved_by,
        )


def directory_candidates(external_user_id: str) -> list[str]:
    """Identifier forms tried against the directory, in order, without repeats."""
    raw = external_user_id.strip()
    suffix = numeric_suffix(raw)
    canonical = canonical_user_id(raw)
    forms = [raw, suffix, f"users/{suffix or canonical}" if (suffix or canonical) else None]
    ordered: list[str] = []
    for form in forms:
        if form and form not in ordered:
            ordered.append(form)
    return ordered


def lookup_directory(
    directory: DirectoryLookup, external_user_id: str
) -> tuple[str, str | None] | None:
    """First directory hit as (display_name, email); lookup errors count as misses."""
    for candidate in directory_candidates(external_user_id):
        try:
            user = directory.get_user(candidate)
        except Exception as exc:
            logger.warning("Directory lookup failed for %s: %s", candidate, exc)
            continue
        if not user:
            continue
        email = normalize_email(user.get("primary_email"))
        name = (user.get("full_name") or "").strip()
        if not email and not name:
            continue
        return name or email_local_part(email) or short_user_label(external_user_id), email
    return None


def _heuristic_candidate(key: str, raw: str, context: ResolutionContext) -> IdentityCandidate:
    if is_long_numeric_id(key):
        domain = context.owner_domain
        return IdentityCandidate(
            external_user_id=key,
            display_name=short_user_label(key),
            email=f"user-{key}@{domain}" if domain else None,
            confidence=(
                HEURISTIC_MEMBER_CONFIDENCE if key in context.members else HEURISTIC_CONFIDENCE
            ),
            resolved_by=IdentityProvenance.HEURISTIC_FALLBACK,
            discovered_by_account_id=context.account_id,
            original_resource_name=raw,
        )

    email = normalize_email(key) if "@" in key else None
    return IdentityCandidate(
        external_user_id=key,
        display_name=email_local_part(email) or short_user_label(key),
        email=email,
        confidence=UNKNOWN_SHAPE_CONFIDENCE,
        resolved_by=IdentityProvenance.HEURISTIC_FALLBACK,
        discovered_by_account_id=context.account_id,
        original_resource_name=raw,
    )


def _resolve(
    db: Session,
    key: str,
    raw: str,
    context: ResolutionContext,
    directory: DirectoryLookup | None,
) -> ResolvedIdentity:
    existing = identity_store.get_identity(db, key)
    if existing is not None and existing.confidence >= ACCEPT_CONFIDENCE:
        return ResolvedIdentity.from_identity(identity_store.touch_identity(db, existing))

    if directory is not None:
        hit = lookup_directory(directory, raw)
        if hit is not None:
            display_name, email = hit
            identity = identity_store.upsert_identity(
                db,
                IdentityCandidate(
                    external_user_id=key,
                    display_name=display_name,
                    email=email,
                    confidence=DIRECTORY_CONFIDENCE,
                    resolved_by=IdentityProvenance.REMOTE_DIRECTORY,
                    discovered_by_account_id=context.account_id,
                    original_resource_name=raw,
                ),
            )
            return ResolvedIdentity.from_identity(identity)

    member = context.members.get(key)
    if member is not None:
        email = normalize_email(member.get("email"))
        name = (member.get("display_name") or "").strip()
        if name or email:
            identity = identity_store.upsert_identity(
                db,
                IdentityCandidate(
                    external_user_id=key,
                    display_name=name or email_local_part(email) or short_user_label(key),
                    email=email,
                    confidence=MEMBERSHIP_CONFIDENCE,
                    resolved_by=IdentityProvenance.MEMBERSHIP_LIST,
                    discovered_by_account_id=context.account_id,
                    original_resource_name=raw,
                ),
            )
            return ResolvedIdentity.from_identity(identity)

    identity = identity_store.upsert_identity(db, _heuristic_candidate(key, raw, context))
    return ResolvedIdentity.from_identity(identity)


def resolve_identity(
    db: Session,
    external_user_id: str,
    *,
    context: ResolutionContext | None = None,
    directory: DirectoryLookup | None = None,
) -> ResolvedIdentity:
    """
    Resolve an identifier to an identity. Never raises.

    The lookup runs inside a savepoint. When the store write fails only that
    savepoint is rolled back, so earlier writes in the caller's transaction
    survive, and an unstored heuristic identity is returned.
    """
    context = context or ResolutionContext()
    raw = (external_user_id or "").strip()
    key = canonical_user_id(raw) or "unknown"
    try:
        with db.begin_nested():
            return _resolve(db, key, raw or key, context, directory)
    except Exception:
        fallback = _heuristic_candidate(key, raw or key, context)
        logger.exception(
            "Identity resolution failed for %s",
            key,
            extra=build_log_context(
                account_id=str(context.account_id) if context.account_id else None,
                space_id=context.space_id,
                external_user_id=key,
            ),
        )
        return ResolvedIdentity(
            external_user_id=key,
            display_name=fallback.display_name,
            email=fallback.email,
            email_domain=extract_email_domain(fallback.email),
            confidence=fallback.confidence,
            resolved_by=fallback.resolved_by,
            stored=False,
        )


def lookup_identity(db: Session, external_user_id: str) -> Identity | None:
    """Read-only lookup for administrative callers; no writes, no remote calls."""
    return identity_store.get_identity(db, external_user_id)
