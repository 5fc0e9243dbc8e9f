"""Tests for other-party inference on direct conversations."""

from datetime import datetime, timedelta, timezone

from chatsync.db.enums import ConversationKind, IdentityProvenance
from chatsync.db.models import Conversation, ConversationMessage
from chatsync.services import identity_store
from chatsync.services.identity_store import IdentityCandidate
from chatsync.services.participant_inference import (
    SOURCE_CROSS_ACCOUNT,
    SOURCE_MESSAGES,
    SOURCE_PARTICIPANTS,
    infer_other_participant,
)

BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _conversation(db, account, space_id, *, participants=None, senders=()):
    conversation = Conversation(
        account_id=account.id,
        remote_space_id=space_id,
        kind=ConversationKind.DIRECT,
        title="",
        participants=participants or [],
        message_count=len(senders),
    )
    for index, (sender, email, own) in enumerate(senders):
        conversation.messages.append(
            ConversationMessage(
                remote_message_id=f"{space_id}/messages/{index}",
                text=f"message {index}",
                create_time=BASE_TIME + timedelta(minutes=index),
                sender_external_id=sender,
                sender_display_name=f"Sender {sender}",
                sender_email=email,
                is_from_owning_account=own,
            )
        )
    db.add(conversation)
    db.commit()
    return conversation


def test_stored_participants_come_first(db, make_account):
    account = make_account("alice@example.com", external_user_id="111")
    conversation = _conversation(
        db,
        account,
        "spaces/P1",
        participants=[
            {"external_user_id": "111", "email": "alice@example.com", "display_name": "Alice"},
            {"external_user_id": "222", "email": "bob@example.com", "display_name": "Bob"},
        ],
        senders=[("333", "carol@example.com", False)],
    )

    participant = infer_other_participant(
        db, conversation, account.email, owning_external_user_id=account.external_user_id
    )

    assert participant.source == SOURCE_PARTICIPANTS
    assert participant.external_user_id == "222"
    assert participant.display_name == "Bob"


def test_owner_is_excluded_by_id_without_email(db, make_account):
    account = make_account("alice@example.com", external_user_id="111")
    conversation = _conversation(
        db,
        account,
        "spaces/P2",
        participants=[
            {"external_user_id": "users/111", "email": None, "display_name": "Me"},
            {"external_user_id": "222", "email": None, "display_name": None},
        ],
    )

    participant = infer_other_participant(
        db, conversation, account.email, owning_external_user_id=account.external_user_id
    )

    assert participant.external_user_id == "222"


def test_most_frequent_non_owner_sender_wins(db, make_account):
    account = make_account("alice@example.com")
    conversation = _conversation(
        db,
        account,
        "spaces/P3",
        senders=[
            ("111", "alice@example.com", True),
            ("444", None, False),
            ("555", None, False),
            ("555", None, False),
        ],
    )

    participant = infer_other_participant(db, conversation, account.email)

    assert participant.source == SOURCE_MESSAGES
    assert participant.external_user_id == "555"
    assert participant.display_name == "Sender 555"


def test_sender_tie_goes_to_first_seen(db, make_account):
    account = make_account("alice@example.com")
    conversation = _conversation(
        db,
        account,
        "spaces/P4",
        senders=[("666", None, False), ("777", None, False)],
    )

    participant = infer_other_participant(db, conversation, account.email)

    assert participant.external_user_id == "666"


def test_sender_uses_identity_store_when_available(db, make_account):
    account = make_account("alice@example.com")
    identity_store.upsert_identity(
        db,
        IdentityCandidate(
            external_user_id="888",
            display_name="Dana Directory",
            email="dana@example.com",
            confidence=95,
            resolved_by=IdentityProvenance.REMOTE_DIRECTORY,
        ),
    )
    db.commit()
    conversation = _conversation(db, account, "spaces/P5", senders=[("888", None, False)])

    participant = infer_other_participant(db, conversation, account.email)

    assert participant.display_name == "Dana Directory"
    assert participant.email == "dana@example.com"
    assert participant.confidence == 95


def test_one_sided_conversation_uses_other_account(db, make_account):
    alice = make_account("alice@example.com", display_name="Alice")
    bob = make_account("bob@example.com", display_name="Bob")
    alice_side = _conversation(
        db,
        alice,
        "spaces/S1",
        senders=[("aaa", "alice@example.com", True), ("aaa", "alice@example.com", True)],
    )
    _conversation(db, bob, "spaces/S1")

    participant = infer_other_participant(db, alice_side, alice.email)

    assert participant.source == SOURCE_CROSS_ACCOUNT
    assert participant.email == "bob@example.com"
    assert participant.display_name == "Bob"
    assert participant.external_user_id is None


def test_cross_account_prefers_stored_identity(db, make_account):
    alice = make_account("alice@example.com")
    bob = make_account("bob@example.com", external_user_id="999")
    identity_store.set_manual_identity(
        db, external_user_id="999", display_name="Robert", email="bob@example.com"
    )
    alice_side = _conversation(db, alice, "spaces/S2")
    _conversation(db, bob, "spaces/S2")

    participant = infer_other_participant(db, alice_side, alice.email)

    assert participant.external_user_id == "999"
    assert participant.display_name == "Robert"
    assert participant.confidence == 100


def test_no_evidence_returns_none(db, make_account):
    account = make_account("alice@example.com")
    conversation = _conversation(
        db,
        account,
        "spaces/P6",
        participants=[{"external_user_id": None, "email": "alice@example.com", "display_name": "A"}],
        senders=[("111", "alice@example.com", True)],
    )

    assert infer_other_participant(db, conversation, account.email) is None
