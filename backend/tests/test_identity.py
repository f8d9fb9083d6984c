"""Tests for identity normalization and channel naming."""
import pytest

from app.chat.errors import InvalidIdentity, ValidationError
from app.chat.identity import (
    conversation_key,
    normalize,
    normalize_room,
    personal_channel,
    room_channel,
)


@pytest.mark.parametrize("raw", ["alice", "Alice", "ALICE", "aLiCe", "  alice ", "\tAlice\n"])
def test_case_and_whitespace_variants_normalize_to_same_identity(raw):
    assert normalize(raw) == "alice"


def test_normalize_is_idempotent():
    assert normalize(normalize("  Bob ")) == normalize("  Bob ")


@pytest.mark.parametrize("raw", ["", "   ", "\n\t"])
def test_blank_identity_rejected(raw):
    with pytest.raises(InvalidIdentity):
        normalize(raw)


@pytest.mark.parametrize("raw", [None, 42, ["alice"], {"identity": "alice"}])
def test_non_string_identity_rejected(raw):
    with pytest.raises(InvalidIdentity):
        normalize(raw)


def test_invalid_identity_is_a_validation_error():
    """Callers that only catch ValidationError still see identity failures."""
    assert issubclass(InvalidIdentity, ValidationError)
    assert InvalidIdentity().code == "invalid_identity"


def test_conversation_key_is_order_and_case_independent():
    assert conversation_key("Alice", "bob") == conversation_key("BOB", "alice") == "alice:bob"


def test_personal_channel_uses_normalized_identity():
    assert personal_channel("Alice") == personal_channel("alice") == "user:alice"


def test_room_channel_does_not_collide_with_personal_channel():
    assert room_channel("bob") != personal_channel("bob")


def test_room_ids_are_trimmed_but_keep_case():
    assert normalize_room("  General ") == "General"
    with pytest.raises(InvalidIdentity):
        normalize_room("  ")
