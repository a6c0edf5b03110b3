"""Tests for identity normalization."""

from __future__ import annotations

import pytest

from cv_intake.identity import (
    identity_key,
    is_valid_email,
    normalize_email,
    normalize_name,
    normalize_phone,
    split_name,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  Alice@Example.COM ", "alice@example.com"),
        ("a@x.com", "a@x.com"),
        ("not-an-email", None),
        ("two@@x.com", None),
        ("spaces in@x.com", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_email(raw, expected):
    assert normalize_email(raw) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("07911 123456", "447911123456"),
        ("+44 7911 123456", "447911123456"),
        ("(555) 123-4567", "5551234567"),
        ("+1 555 123 4567", "15551234567"),
        ("12345", None),
        ("1234567890123456", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_uk_formats_collapse_to_one_value():
    assert normalize_phone("07911 123456") == normalize_phone("+447911123456")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  Jane   DOE ", "jane doe"),
        ("O'Brien, Pat", "o brien pat"),
        ("J", None),
        ("--", None),
        ("José Núñez", "jose nunez"),
        ("ZOË  Ångström", "zoe angstrom"),
        ("李明", "李明"),
        ("Иван Петров", "иван петров"),
        ("under_score", "under score"),
        (None, None),
    ],
)
def test_normalize_name(raw, expected):
    assert normalize_name(raw) == expected


def test_identity_key_prefers_email_then_phone_then_name():
    assert identity_key("A@x.com", "07911 123456", "Jane") == "email:a@x.com"
    assert identity_key("bad", "07911 123456", "Jane") == "phone:447911123456"
    assert identity_key(None, "123", "Jane Doe") == "name:jane doe"
    assert identity_key(None, None, None) is None


def test_accented_and_plain_spellings_share_a_key():
    assert identity_key(name="José Núñez") == identity_key(name="Jose Nunez") == "name:jose nunez"


def test_is_valid_email():
    assert is_valid_email(" a@x.com ")
    assert not is_valid_email("a@x")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Jane Mary Doe", ("Jane", "Mary Doe")),
        ("Cher", ("Cher", "")),
        ("   ", ("", "")),
        (None, ("", "")),
    ],
)
def test_split_name(raw, expected):
    assert split_name(raw) == expected
