"""Unit tests for vaultsync.sizing."""

from __future__ import annotations

from vaultsync.sizing import (
    BROADCAST_LIMIT,
    SHARED_DOCUMENT_LIMIT,
    SHARED_DOCUMENT_SAFE_LIMIT,
    check_document_size,
    check_size,
    dumps_compact,
    json_size,
)


class TestLimits:
    def test_wire_ceilings(self) -> None:
        assert SHARED_DOCUMENT_LIMIT == 16384
        assert SHARED_DOCUMENT_SAFE_LIMIT == 15360
        assert BROADCAST_LIMIT == 65536


class TestJsonSize:
    def test_compact_separators(self) -> None:
        assert dumps_compact({"a": [1, 2]}) == '{"a":[1,2]}'
        assert json_size({"a": [1, 2]}) == 11

    def test_counts_utf8_bytes_not_characters(self) -> None:
        # "é" is two bytes in UTF-8
        assert json_size("é") == 4


class TestCheckSize:
    def test_fits_at_exact_limit(self) -> None:
        value = "x" * 98  # 100 bytes with quotes
        check = check_size(value, 100)
        assert check.fits is True
        assert check.size == 100
        assert check.percentage == 100.0

    def test_over_limit(self) -> None:
        check = check_size("x" * 99, 100)
        assert check.fits is False
        assert check.size == 101

    def test_kilobytes_rounds(self) -> None:
        check = check_size("x" * (70 * 1024), BROADCAST_LIMIT)
        assert check.fits is False
        assert check.kilobytes == 70

    def test_unserializable_never_fits(self) -> None:
        check = check_size({"value": object()}, 100)
        assert check.fits is False
        assert check.size > check.limit


class TestCheckDocumentSize:
    def test_measures_whole_document_with_candidate(self) -> None:
        document = {"other": "y" * 50}
        check = check_document_size("key", "x" * 10, document, limit=1000)
        assert check.size == json_size({"other": "y" * 50, "key": "x" * 10})

    def test_candidate_replaces_existing_value(self) -> None:
        document = {"key": "x" * 5000}
        check = check_document_size("key", "small", document, limit=100)
        assert check.fits is True

    def test_defaults_to_safe_limit(self) -> None:
        check = check_document_size("key", {}, {})
        assert check.limit == SHARED_DOCUMENT_SAFE_LIMIT
