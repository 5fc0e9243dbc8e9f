"""Tests for the identity resolution strategy chain."""

import threading

from chatsync.db.enums import IdentityProvenance
from chatsync.db.models import Identity
from chatsync.db.session import SessionLocal
from chatsync.services import identity_resolver, identity_store
from chatsync.services.identity_resolver import ResolutionContext, resolve_identity
from chatsync.services.identity_store import IdentityCandidate


class _Directory:
    def __init__(self, users=None, errors=()):
        self.users = users or {}
        self.errors = set(errors)
        self.calls = []

    def get_user(self, identifier):
        self.calls.append(identifier)
        if identifier in self.errors:
            raise RuntimeError("directory down")
        return self.users.get(identifier)


def test_unknown_long_numeric_id_falls_back_to_short_label(db, make_account):
    account = make_account("owner@example.com")
    directory = _Directory()

    resolved = resolve_identity(
        db,
        "users/12345678901234567",
        context=ResolutionContext(account=account, space_id="spaces/S1"),
        directory=directory,
    )

    assert resolved.display_name == "User 12345678"
    assert 30 <= resolved.confidence <= 35
    assert resolved.resolved_by == IdentityProvenance.HEURISTIC_FALLBACK
    assert resolved.email == "user-12345678901234567@example.com"
    assert directory.calls == ["users/12345678901234567", "12345678901234567"]


def test_confirmed_member_gets_higher_heuristic_confidence(db, make_account):
    account = make_account("owner@example.com")
    context = ResolutionContext(
        account=account,
        space_id="spaces/S1",
        members={
            "123456789012345678": {
                "external_user_id": "users/123456789012345678",
                "display_name": None,
                "email": None,
            }
        },
    )

    resolved = resolve_identity(db, "users/123456789012345678", context=context)

    assert resolved.confidence == 35


def test_directory_hit_on_numeric_suffix(db):
    directory = _Directory(
        users={"998877665544332211": {"user_id": None, "primary_email": "Dana@x.com", "full_name": "Dana"}}
    )

    resolved = resolve_identity(db, "users/998877665544332211", directory=directory)

    assert resolved.display_name == "Dana"
    assert resolved.email == "dana@x.com"
    assert resolved.confidence == 95
    assert resolved.resolved_by == IdentityProvenance.REMOTE_DIRECTORY
    assert identity_store.get_identity(db, "998877665544332211").confidence == 95


def test_directory_errors_are_misses_and_membership_is_used(db):
    directory = _Directory(errors={"users/42", "42"})
    context = ResolutionContext(
        space_id="spaces/S2",
        members={"42": {"external_user_id": "users/42", "display_name": "Eve", "email": "eve@x.com"}},
    )

    resolved = resolve_identity(db, "users/42", context=context, directory=directory)

    assert resolved.display_name == "Eve"
    assert resolved.confidence == 90
    assert resolved.resolved_by == IdentityProvenance.MEMBERSHIP_LIST


def test_stored_identity_is_returned_without_remote_calls(db):
    identity_store.set_manual_identity(db, external_user_id="77", display_name="Fixed", email="f@x.com")
    directory = _Directory()

    resolved = resolve_identity(db, "users/77", directory=directory)

    assert resolved.display_name == "Fixed"
    assert resolved.confidence == 100
    assert directory.calls == []
    assert identity_store.get_identity(db, "77").seen_count == 2


def test_confidence_never_decreases_across_calls(db):
    key = "111122223333444455"
    first = resolve_identity(db, key)
    assert first.confidence == 30

    upgraded = resolve_identity(
        db,
        key,
        directory=_Directory(users={key: {"user_id": key, "primary_email": "g@x.com", "full_name": "Gil"}}),
    )
    assert upgraded.confidence == 95

    again = resolve_identity(db, key, directory=_Directory())
    assert again.confidence == 95
    assert again.display_name == "Gil"
    assert identity_store.get_identity(db, key).seen_count == 3


def test_other_identifier_shapes_get_low_confidence(db):
    plain = resolve_identity(db, "bot-account")
    assert plain.confidence == 20
    assert plain.display_name == "User bot-acco"

    email_shaped = resolve_identity(db, "Helen@X.com")
    assert email_shaped.confidence == 20
    assert email_shaped.email == "helen@x.com"
    assert email_shaped.display_name == "helen"


def test_resolver_never_raises(db, monkeypatch):
    def broken_upsert(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(identity_resolver.identity_store, "upsert_identity", broken_upsert)

    resolved = resolve_identity(db, "users/12345678901234567")

    assert resolved.stored is False
    assert resolved.display_name == "User 12345678"
    assert resolved.confidence == 30


def test_failed_resolution_keeps_earlier_writes_in_the_transaction(db, monkeypatch):
    identity_store.upsert_identity(
        db,
        IdentityCandidate(
            external_user_id="users/111111111111111111",
            display_name="Earlier",
            email=None,
            confidence=90,
            resolved_by=IdentityProvenance.MEMBERSHIP_LIST,
        ),
    )

    def broken_upsert(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(identity_resolver.identity_store, "upsert_identity", broken_upsert)

    resolved = resolve_identity(db, "users/222222222222222222")

    assert resolved.stored is False
    earlier = identity_store.get_identity(db, "111111111111111111")
    assert earlier is not None
    assert earlier.display_name == "Earlier"


def test_first_sighting_in_two_sessions_shares_one_row(db):
    key = "users/123456789012345678"
    first = SessionLocal()
    second = SessionLocal()
    results = {}

    def resolve_in_second_session():
        results["resolved"] = resolve_identity(second, key)

    try:
        identity_store.upsert_identity(
            first,
            IdentityCandidate(
                external_user_id=key,
                display_name="User 12345678",
                email=None,
                confidence=30,
                resolved_by=IdentityProvenance.HEURISTIC_FALLBACK,
            ),
        )

        worker = threading.Thread(target=resolve_in_second_session)
        worker.start()
        worker.join(timeout=10)

        resolved = results["resolved"]
        assert resolved.stored is True
        second.commit()
        first.commit()
    finally:
        second.close()
        first.close()

    stored = identity_store.get_identity(db, key)
    assert stored.seen_count == 2
    assert db.query(Identity).count() == 1


def test_directory_candidates_order():
    assert identity_resolver.directory_candidates("users/123") == ["users/123", "123"]
    assert identity_resolver.directory_candidates("123") == ["123", "users/123"]
    assert identity_resolver.directory_candidates("people/abc9") == ["people/abc9", "9", "users/9"]
