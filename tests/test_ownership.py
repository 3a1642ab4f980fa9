from core.ownership import JoinRequest, resolve_ownership
from schemas import RoomSnapshot


ROOM = RoomSnapshot(code="ABC123", owner_name="Alice", owner_identity="alice@example.com")


def test_explicit_claim_wins_first():
    request = JoinRequest(name="Alice", identity="alice@example.com", is_owner_claim=True)
    assert resolve_ownership(ROOM, request) == "explicit_claim"


def test_identity_match_is_case_insensitive():
    request = JoinRequest(name="Al on laptop", identity=" ALICE@example.com ")
    assert resolve_ownership(ROOM, request) == "identity_match"


def test_name_match_is_last_resort():
    assert resolve_ownership(ROOM, JoinRequest(name="Alice")) == "name_match"
    assert resolve_ownership(ROOM, JoinRequest(name="Alice", identity="other@example.com")) == "name_match"


def test_no_rule_matches():
    assert resolve_ownership(ROOM, JoinRequest(name="Bob", identity="bob@example.com")) is None


def test_room_without_identity_never_matches_identity():
    room = RoomSnapshot(code="ABC123", owner_name="Alice")
    assert resolve_ownership(room, JoinRequest(name="Bob", identity="alice@example.com")) is None
