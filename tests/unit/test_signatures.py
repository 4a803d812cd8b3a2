"""Tests for error signature normalization."""

import pytest

from flakelens.ingest.signatures import MAX_SIGNATURE_LENGTH, categorize_error, normalize_error


class TestCategorizeError:
    """Tests for categorize_error."""

    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("Test timeout of 30000ms exceeded.", "timeout"),
            ("Target page, context or browser has been closed", "crash"),
            ("page.goto: net::ERR_CONNECTION_REFUSED at http://localhost", "network"),
            ("Error: expect(received).toBe(expected)", "assertion"),
            ("Error: strict mode violation: locator('button') resolved to 2 elements", "locator"),
            ("TypeError: cannot read properties of undefined", "error"),
        ],
    )
    def test_categories(self, message: str, category: str) -> None:
        assert categorize_error(message) == category


class TestNormalizeError:
    """Tests for normalize_error."""

    def test_none_and_blank(self) -> None:
        assert normalize_error(None) == ""
        assert normalize_error("   ") == ""

    def test_volatile_tokens_replaced(self) -> None:
        """Runs differing only in numbers, urls and ids share a signature."""
        first = normalize_error("Timed out 5000ms waiting for http://localhost:3000/a?id=1")
        second = normalize_error("Timed out 7500ms waiting for http://localhost:4100/b?id=9")
        assert first == second
        assert first == "timeout: Timed out Nms waiting for <url>"

    def test_uuid_and_hex(self) -> None:
        signature = normalize_error(
            "Error: order 3f2b8c1e-1234-4abc-9def-0123456789ab at 0xdeadbeef"
        )
        assert "<uuid>" in signature
        assert "<hex>" in signature

    def test_first_line_only_and_ansi_stripped(self) -> None:
        message = "\x1b[31mError: expect(received).toBe(expected)\x1b[39m\n\nExpected: 1\nReceived: 2"
        assert normalize_error(message) == "assertion: Error: expect(received).toBe(expected)"

    def test_truncated(self) -> None:
        signature = normalize_error("Error: " + "x" * 500)
        assert len(signature) == MAX_SIGNATURE_LENGTH
