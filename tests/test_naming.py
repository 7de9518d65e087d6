"""
Tests for the enabled/disabled folder naming convention.
"""

import pytest

from naming import (
    DISABLED_PREFIX,
    is_disabled,
    normalize_legacy_marker,
    split_state,
    to_disabled,
    to_enabled,
    with_state,
)


def test_marker_only_on_final_segment():
    assert to_disabled("Chars/RedHat") == "Chars/DISABLED_RedHat"
    assert to_disabled("DISABLED_Chars/RedHat") == "DISABLED_Chars/DISABLED_RedHat"
    assert not is_disabled("DISABLED_Chars/RedHat")
    assert is_disabled("Chars/DISABLED_RedHat")


def test_to_disabled_is_idempotent():
    once = to_disabled("Chars/RedHat")
    assert to_disabled(once) == once


def test_to_enabled_without_marker_is_noop():
    assert to_enabled("Chars/RedHat") == "Chars/RedHat"
    assert to_enabled("Chars/DISABLED_RedHat") == "Chars/RedHat"


def test_backslashes_and_trailing_separator():
    assert to_disabled("Chars\\RedHat\\") == "Chars/DISABLED_RedHat"
    assert split_state("Chars\\DISABLED_RedHat") == ("Chars/RedHat", False)


def test_split_and_with_state_are_inverse():
    for path in ("a/b/Mod", "a/b/DISABLED_Mod", "Mod", "DISABLED_Mod"):
        clean, enabled = split_state(path)
        assert with_state(clean, enabled) == path


def test_empty_segment_rejected():
    with pytest.raises(ValueError):
        to_disabled("")


def test_prefix_alone_is_disabled_with_empty_name():
    assert is_disabled(DISABLED_PREFIX)
    assert to_enabled(DISABLED_PREFIX) == ""


@pytest.mark.parametrize("name, expected", [
    ("DISABLEDHat", "DISABLED_Hat"),
    ("DISABLED Hat", "DISABLED_ Hat"),
    ("disabled-Hat", None),
    ("DisabledVeteranOutfit", None),
    ("DISABLED_Hat", None),
    ("Hat", None),
    ("DISABLED", None),
])
def test_normalize_legacy_marker(name, expected):
    assert normalize_legacy_marker(name) == expected
