import pytest

from core.exceptions import InvalidInput
from services.naming_service import (
    ROOM_CODE_ALPHABET,
    generate_room_code,
    validate_display_name,
    validate_room_code,
)


def test_generated_codes_use_unambiguous_alphabet():
    for _ in range(200):
        code = generate_room_code()
        assert len(code) == 6
        assert set(code) <= set(ROOM_CODE_ALPHABET)

    for ambiguous in "0O1I":
        assert ambiguous not in ROOM_CODE_ALPHABET


def test_room_code_is_normalized():
    assert validate_room_code("  abc123 ") == "ABC123"


@pytest.mark.parametrize("code", ["", "   ", "ABC12", "ABC1234", "ABC-12"])
def test_malformed_room_codes_are_rejected(code):
    with pytest.raises(InvalidInput):
        validate_room_code(code)


def test_display_name_is_trimmed():
    assert validate_display_name("  Alice ") == "Alice"


@pytest.mark.parametrize("name", ["", "   ", None, "x" * 41])
def test_bad_display_names_are_rejected(name):
    with pytest.raises(InvalidInput):
        validate_display_name(name)
