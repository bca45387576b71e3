"""Tests for TTL duration parsing."""

import pytest

from tiercache.core.duration import parse_duration
from tiercache.errors import InvalidArgumentError


class TestParseDuration:
    """Test conversion of TTL options to milliseconds."""

    def test_none_means_no_ttl(self) -> None:
        assert parse_duration(None) == 0

    def test_numbers_are_milliseconds(self) -> None:
        assert parse_duration(40) == 40
        assert parse_duration(12.9) == 12
        assert parse_duration(0) == 0

    def test_numeric_string(self) -> None:
        assert parse_duration("250") == 250
        assert parse_duration(" 1.5 ") == 1

    def test_empty_string(self) -> None:
        assert parse_duration("") == 0

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("90s", 90_000),
            ("1d 3h", 27 * 3_600_000),
            ("1 hour, 30 minutes", 5_400_000),
            ("2w", 14 * 86_400_000),
            ("1.5m", 90_000),
            ("500ms", 500),
            ("1mo", 30 * 86_400_000),
            ("1y", 365 * 86_400_000),
            ("10 Seconds", 10_000),
        ],
    )
    def test_human_strings(self, text: str, expected: int) -> None:
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("bad", ["soon", "10 parsecs", "1h and 2m", "h1", "-5s"])
    def test_unparseable_strings_fail(self, bad: str) -> None:
        with pytest.raises(InvalidArgumentError):
            parse_duration(bad)

    def test_negative_numbers_fail(self) -> None:
        with pytest.raises(InvalidArgumentError):
            parse_duration(-1)

    def test_infinite_fails(self) -> None:
        with pytest.raises(InvalidArgumentError):
            parse_duration(float("inf"))

    def test_bool_is_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            parse_duration(True)

    def test_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_duration("later")
