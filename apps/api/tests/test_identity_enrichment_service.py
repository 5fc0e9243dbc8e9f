"""Tests for post-sync identity enrichment."""

from datetime import datetime, timedelta, timezone

from chatsync.db.enums import ConversationKind, IdentityProvenance
from chatsync.db.models import Conversation, ConversationMessage
from chatsync.services import identity_enrichment_service, identity_store
from chatsync.services.identity_store import IdentityCandidate

BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _direct(db, account, space_id, senders):
    conversation = Conversation(
        account_id=account.id,
        remote_space_id=space_id,
        kind=ConversationKind.DIRECT,
        title="",
        participants=[],
        message_count=len(senders),
    )
    for index, (sender, own) in enumerate(senders):
        conversation.messages.append(
            ConversationMessage(
                remote_message_id=f"{space_id}/messages/{index}",
                text="hi",
                create_time=BASE_TIME + timedelta(minutes=index),
                sender_external_id=sender,
                sender_display_name=f"User {sender}",
                is_from_owning_account=own,
            )
        )
    db.add(conversation)
    db.commit()
    return conversation


def test_link_uses_authorship_flags(db, make_account):
    account = make_account("alice@example.com", display_name="Alice")
    conversation = _direct(db, account, "spaces/D1", [("111", True), ("222", False), ("111", True)])

    counts = identity_enrichment_service.link_account_identities(db)

    assert counts == {"accounts_checked": 1, "accounts_linked": 1, "messages_updated": 2}
    db.refresh(account)
    assert account.external_user_id == "111"
    identity = identity_store.get_identity(db, "111")
    assert identity.confidence == identity_enrichment_service.AUTHORSHIP_CONFIDENCE
    assert identity.resolved_by == IdentityProvenance.MESSAGE_AUTHORSHIP
    assert identity.email == "alice@example.com"
    db.refresh(conversation)
    own = [m for m in conversation.messages if m.sender_external_id == "111"]
    assert all(m.sender_display_name == "Alice" for m in own)
    assert all(m.sender_email == "alice@example.com" for m in own)


def test_link_falls_back_to_direct_presence(db, make_account):
    account = make_account("alice@example.com")
    _direct(db, account, "spaces/D1", [("aaa", False), ("bbb", False)])
    _direct(db, account, "spaces/D2", [("aaa", False), ("ccc", False)])

    assert identity_enrichment_service.infer_account_user_id(db, account) == "aaa"


def test_presence_tie_is_not_linked(db, make_account):
    account = make_account("alice@example.com")
    _direct(db, account, "spaces/D1", [("aaa", False), ("bbb", False)])
    _direct(db, account, "spaces/D2", [("aaa", False), ("bbb", False)])

    assert identity_enrichment_service.infer_account_user_id(db, account) is None
    counts = identity_enrichment_service.link_account_identities(db)
    assert counts["accounts_linked"] == 0


def test_link_does_not_lower_directory_identity(db, make_account):
    account = make_account("alice@example.com", external_user_id="111")
    identity_store.upsert_identity(
        db,
        IdentityCandidate(
            external_user_id="111",
            display_name="Alice Directory",
            email="alice@example.com",
            confidence=95,
            resolved_by=IdentityProvenance.REMOTE_DIRECTORY,
        ),
    )
    db.commit()

    identity_enrichment_service.link_account_identities(db)

    identity = identity_store.get_identity(db, "111")
    assert identity.confidence == 95
    assert identity.display_name == "Alice Directory"


class _Directory:
    def __init__(self, users):
        self.users = users

    def get_user(self, identifier):
        return self.users.get(identifier)


def test_reresolve_upgrades_weak_identities(db, make_account):
    account = make_account("alice@example.com")
    identity_store.upsert_identity(
        db,
        IdentityCandidate(
            external_user_id="777",
            display_name="User 777",
            email=None,
            confidence=30,
            resolved_by=IdentityProvenance.HEURISTIC_FALLBACK,
            original_resource_name="users/777",
        ),
    )
    identity_store.set_manual_identity(db, external_user_id="888", display_name="Kept", email=None)
    _direct(db, account, "spaces/D1", [("777", False)])
    directory = _Directory(
        {
            "users/777": {"user_id": "777", "primary_email": "Gus@Example.com", "full_name": "Gus"},
            "users/888": {"user_id": "888", "primary_email": "x@example.com", "full_name": "X"},
        }
    )

    counts = identity_enrichment_service.reresolve_low_confidence_identities(db, directory=directory)

    assert counts == {"checked": 1, "upgraded": 1, "messages_updated": 1}
    upgraded = identity_store.get_identity(db, "777")
    assert upgraded.confidence == 95
    assert upgraded.email == "gus@example.com"
    assert upgraded.display_name == "Gus"
    assert identity_store.get_identity(db, "888").display_name == "Kept"


def test_refresh_message_senders_is_idempotent(db, make_account):
    account = make_account("alice@example.com")
    _direct(db, account, "spaces/D1", [("999", False)])
    identity_store.set_manual_identity(
        db, external_user_id="999", display_name="Hana", email="hana@partner.org"
    )

    assert identity_enrichment_service.refresh_message_senders(db) == 1
    assert identity_enrichment_service.refresh_message_senders(db) == 0

    message = db.query(ConversationMessage).one()
    assert message.sender_display_name == "Hana"
    assert message.is_external is True
