"""Identity store - persistent external user id -> identity mapping.

Writes follow one merge rule: an incoming candidate replaces the stored fields
only when its confidence is at least the stored confidence. Manual writes
always replace, and a manual row is only replaced by another manual write.
Every write for the same external id is serialized (in-process keyed lock plus
a row lock), so concurrent syncs cannot lose seen_count or confidence updates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import case, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Query, Session

from chatsync.core.concurrency import identity_locks
from chatsync.db.enums import IdentityProvenance
from chatsync.db.models import Identity
from chatsync.utils.normalization import (
    as_utc,
    canonical_user_id,
    extract_email_domain,
    normalize_email,
)
from chatsync.utils.pagination import PaginationParams, paginate_query

logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 100

CONFIDENCE_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("90-100", 90, 100),
    ("70-89", 70, 89),
    ("50-69", 50, 69),
    ("30-49", 30, 49),
    ("0-29", 0, 29),
)


class IdentityStoreError(Exception):
    """Base exception for identity store errors."""

    pass


class IdentityNotFoundError(IdentityStoreError):
    """No identity stored for the external id."""

    pass


@dataclass(frozen=True)
class IdentityCandidate:
    """Evidence about one external user, ready to be merged into the store."""

    external_user_id: str
    display_name: str
    email: str | None
    confidence: int
    resolved_by: IdentityProvenance
    discovered_by_account_id: UUID | None = None
    original_resource_name: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _clamp_confidence(value: int) -> int:
    return max(0, min(100, int(value)))


def get_identity(db: Session, external_user_id: str | None) -> Identity | None:
    """Look up an identity by external id (any accepted reference form)."""
    key = canonical_user_id(external_user_id)
    if not key:
        return None
    return db.query(Identity).filter(Identity.external_user_id == key).first()


def find_identity_by_email(db: Session, email: str | None) -> Identity | None:
    """Best identity for an address: highest confidence, then most recently seen."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    return (
        db.query(Identity)
        .filter(func.lower(Identity.email) == normalized)
        .order_by(Identity.confidence.desc(), Identity.last_seen.desc())
        .first()
    )


def _should_replace(existing: Identity, candidate: IdentityCandidate) -> bool:
    if candidate.resolved_by == IdentityProvenance.MANUAL:
        return True
    if existing.resolved_by == IdentityProvenance.MANUAL:
        return False
    return candidate.confidence >= existing.confidence


def _apply_candidate(identity: Identity, candidate: IdentityCandidate) -> None:
    email = normalize_email(candidate.email)
    identity.display_name = candidate.display_name
    # Keep a known address when the new evidence carries none.
    identity.email = email or identity.email
    identity.email_domain = extract_email_domain(identity.email)
    identity.confidence = candidate.confidence
    identity.resolved_by = candidate.resolved_by


def _insert_if_absent(db: Session, candidate: IdentityCandidate, now: datetime) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING; True when this call created the row."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = postgresql.insert
    elif dialect == "sqlite":
        insert_fn = sqlite.insert
    else:
        raise IdentityStoreError(f"Unsupported database dialect for identity upsert: {dialect}")

    email = normalize_email(candidate.email)
    stmt = (
        insert_fn(Identity)
        .values(
            id=uuid4(),
            external_user_id=candidate.external_user_id,
            display_name=candidate.display_name,
            email=email,
            email_domain=extract_email_domain(email),
            confidence=candidate.confidence,
            resolved_by=candidate.resolved_by,
            discovered_by_account_id=candidate.discovered_by_account_id,
            original_resource_name=candidate.original_resource_name,
            first_seen=now,
            last_seen=now,
            seen_count=1,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[Identity.external_user_id])
    )
    return db.execute(stmt).rowcount == 1


def upsert_identity(db: Session, candidate: IdentityCandidate) -> Identity:
    """
    Insert a new identity or merge the candidate into the stored one.

    Always bumps seen_count/last_seen. Flushes but does not commit; callers own
    the transaction boundary.

    The insert never fails on a duplicate key: when another transaction created
    the same id first, the database makes this call wait for it and the
    candidate is merged into that row instead.
    """
    key = canonical_user_id(candidate.external_user_id)
    if not key:
        raise ValueError("external_user_id is required")
    confidence = _clamp_confidence(
        MANUAL_CONFIDENCE
        if candidate.resolved_by == IdentityProvenance.MANUAL
        else candidate.confidence
    )
    candidate = IdentityCandidate(
        external_user_id=key,
        display_name=candidate.display_name,
        email=candidate.email,
        confidence=confidence,
        resolved_by=candidate.resolved_by,
        discovered_by_account_id=candidate.discovered_by_account_id,
        original_resource_name=candidate.original_resource_name,
    )

    with identity_locks.hold(key):
        now = _now_utc()
        db.flush()
        created = _insert_if_absent(db, candidate, now)
        identity = db.execute(
            select(Identity)
            .where(Identity.external_user_id == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

        if created:
            logger.debug(
                "Created identity %s via %s (confidence=%s)",
                key,
                candidate.resolved_by.value,
                candidate.confidence,
            )
            return identity

        if _should_replace(identity, candidate):
            if (
                identity.confidence != candidate.confidence
                or identity.resolved_by != candidate.resolved_by
            ):
                logger.info(
                    "Identity %s upgraded %s/%s -> %s/%s",
                    key,
                    identity.resolved_by.value,
                    identity.confidence,
                    candidate.resolved_by.value,
                    candidate.confidence,
                )
            _apply_candidate(identity, candidate)
            identity.updated_at = now

        identity.seen_count = (identity.seen_count or 0) + 1
        identity.last_seen = now
        db.add(identity)
        db.flush()
        return identity


def touch_identity(db: Session, identity: Identity) -> Identity:
    """Record another encounter without changing any resolved field."""
    with identity_locks.hold(identity.external_user_id):
        locked = db.execute(
            select(Identity).where(Identity.id == identity.id).with_for_update()
        ).scalar_one()
        locked.seen_count = (locked.seen_count or 0) + 1
        locked.last_seen = _now_utc()
        db.add(locked)
        db.flush()
        return locked


# =============================================================================
# Administrative operations
# =============================================================================


def set_manual_identity(
    db: Session,
    *,
    external_user_id: str,
    display_name: str,
    email: str | None,
) -> Identity:
    """Operator override: provenance manual, confidence 100, always wins."""
    identity = upsert_identity(
        db,
        IdentityCandidate(
            external_user_id=external_user_id,
            display_name=display_name.strip(),
            email=email,
            confidence=MANUAL_CONFIDENCE,
            resolved_by=IdentityProvenance.MANUAL,
            original_resource_name=external_user_id,
        ),
    )
    db.commit()
    db.refresh(identity)
    return identity


def delete_identity(db: Session, *, external_user_id: str) -> None:
    identity = get_identity(db, external_user_id)
    if identity is None:
        raise IdentityNotFoundError(f"Identity {external_user_id} not found")
    db.delete(identity)
    db.commit()


def merge_identities(
    db: Session,
    *,
    primary_external_user_id: str,
    duplicate_external_user_ids: list[str],
) -> Identity:
    """
    Fold duplicate rows into a primary identity and delete the duplicates.

    The primary keeps its own id; seen counts are summed and the highest
    confidence (with its provenance and fields) is kept.
    """
    primary = get_identity(db, primary_external_user_id)
    if primary is None:
        raise IdentityNotFoundError(f"Identity {primary_external_user_id} not found")

    duplicate_keys = {
        key
        for key in (canonical_user_id(value) for value in duplicate_external_user_ids)
        if key and key != primary.external_user_id
    }
    duplicates = (
        db.query(Identity).filter(Identity.external_user_id.in_(sorted(duplicate_keys))).all()
        if duplicate_keys
        else []
    )
    missing = duplicate_keys - {row.external_user_id for row in duplicates}
    if missing:
        raise IdentityNotFoundError(f"Identities not found: {', '.join(sorted(missing))}")

    for duplicate in duplicates:
        primary.seen_count += duplicate.seen_count
        first_seen = as_utc(duplicate.first_seen)
        if first_seen and primary.first_seen and first_seen < as_utc(primary.first_seen):
            primary.first_seen = duplicate.first_seen
        if duplicate.confidence > primary.confidence and primary.resolved_by != IdentityProvenance.MANUAL:
            primary.display_name = duplicate.display_name
            primary.email = duplicate.email or primary.email
            primary.email_domain = extract_email_domain(primary.email)
            primary.confidence = duplicate.confidence
            primary.resolved_by = duplicate.resolved_by
        db.delete(duplicate)

    primary.last_seen = _now_utc()
    primary.updated_at = _now_utc()
    db.add(primary)
    db.commit()
    db.refresh(primary)
    logger.info(
        "Merged %s duplicate identities into %s", len(duplicates), primary.external_user_id
    )
    return primary


def build_identity_query(
    db: Session,
    *,
    resolved_by: IdentityProvenance | None = None,
    domain: str | None = None,
    min_confidence: int | None = None,
    max_confidence: int | None = None,
    search: str | None = None,
) -> Query:
    query = db.query(Identity)
    if resolved_by is not None:
        query = query.filter(Identity.resolved_by == resolved_by)
    if domain:
        query = query.filter(Identity.email_domain == domain.strip().lower())
    if min_confidence is not None:
        query = query.filter(Identity.confidence >= min_confidence)
    if max_confidence is not None:
        query = query.filter(Identity.confidence <= max_confidence)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(Identity.display_name).like(pattern),
                func.lower(Identity.email).like(pattern),
                Identity.external_user_id.like(pattern),
            )
        )
    return query.order_by(Identity.confidence.desc(), Identity.last_seen.desc())


def list_identities(
    db: Session,
    *,
    pagination: PaginationParams,
    resolved_by: IdentityProvenance | None = None,
    domain: str | None = None,
    min_confidence: int | None = None,
    max_confidence: int | None = None,
    search: str | None = None,
) -> tuple[list[Identity], int]:
    query = build_identity_query(
        db,
        resolved_by=resolved_by,
        domain=domain,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        search=search,
    )
    return paginate_query(query, pagination)


def get_identity_stats(db: Session) -> dict:
    """Totals plus breakdowns by provenance, domain and confidence bucket."""
    total, avg_confidence, total_seen = db.query(
        func.count(Identity.id),
        func.avg(Identity.confidence),
        func.coalesce(func.sum(Identity.seen_count), 0),
    ).one()

    by_provenance = [
        {
            "resolved_by": resolved_by.value if resolved_by else None,
            "count": count,
            "avg_confidence": round(float(avg or 0), 2),
        }
        for resolved_by, count, avg in db.query(
            Identity.resolved_by, func.count(Identity.id), func.avg(Identity.confidence)
        )
        .group_by(Identity.resolved_by)
        .order_by(func.count(Identity.id).desc())
        .all()
    ]

    by_domain = [
        {"domain": domain, "count": count}
        for domain, count in db.query(Identity.email_domain, func.count(Identity.id))
        .group_by(Identity.email_domain)
        .order_by(func.count(Identity.id).desc())
        .limit(10)
        .all()
    ]

    bucket_expr = case(
        *[
            (Identity.confidence.between(low, high), label)
            for label, low, high in CONFIDENCE_BUCKETS
        ],
        else_="0-29",
    )
    counts = dict(
        db.query(bucket_expr, func.count(Identity.id)).group_by(bucket_expr).all()
    )
    distribution = [
        {"bucket": label, "count": int(counts.get(label, 0))}
        for label, _low, _high in reversed(CONFIDENCE_BUCKETS)
    ]

    return {
        "total": int(total or 0),
        "avg_confidence": round(float(avg_confidence or 0), 2),
        "total_seen": int(total_seen or 0),
        "by_provenance": by_provenance,
        "by_domain": by_domain,
        "confidence_distribution": distribution,
    }
