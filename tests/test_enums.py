"""Unit tests for core/enums.py."""

import pytest

from core.enums import APIKeyStatus, TokenType


class TestTokenTypeParse:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("reset_password", TokenType.RESET_PASSWORD),
            ("RESET_PASSWORD", TokenType.RESET_PASSWORD),
            ("  Verify_Email ", TokenType.VERIFY_EMAIL),
            (b"team_invite", TokenType.TEAM_INVITE),
            ("", TokenType.UNKNOWN),
            ("unknown", TokenType.UNKNOWN),
            (TokenType.VERIFY_EMAIL, TokenType.VERIFY_EMAIL),
        ],
    )
    def test_accepted_values(self, raw, expected) -> None:
        assert TokenType.parse(raw) is expected

    def test_unknown_string_raises_value_error(self) -> None:
        with pytest.raises(ValueError, match="invalid TokenType"):
            TokenType.parse("magic_link")

    def test_wrong_type_raises_type_error(self) -> None:
        with pytest.raises(TypeError):
            TokenType.parse(42)

    def test_str_is_the_stored_value(self) -> None:
        assert str(TokenType.RESET_PASSWORD) == "reset_password"
        assert TokenType("team_invite") is TokenType.TEAM_INVITE


class TestAPIKeyStatusParse:
    def test_round_trip_through_string(self) -> None:
        for status in APIKeyStatus:
            assert APIKeyStatus.parse(str(status)) is status

    def test_case_insensitive(self) -> None:
        assert APIKeyStatus.parse("Stale") is APIKeyStatus.STALE

    def test_empty_is_unknown(self) -> None:
        assert APIKeyStatus.parse("") is APIKeyStatus.UNKNOWN

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            APIKeyStatus.parse("expired")
