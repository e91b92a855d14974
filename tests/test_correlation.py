from __future__ import annotations

import pytest

from mcp_ipc_bridge.correlation import (
    ResponsePattern,
    embedded_timestamp,
    is_fresh,
    reply_prefix,
    response_filename,
    validate_prefix,
)


def test_pattern_extracts_embedded_timestamp():
    pattern = ResponsePattern.for_prefix("yak")
    assert pattern.timestamp_of("yak_1700000000123.json") == 1700000000123
    assert pattern.matches("yak_1.json")


@pytest.mark.parametrize(
    "name",
    [
        "yak_123.json.tmp",
        "yak_.json",
        "yak_12a.json",
        "list_yaks_123.json",
        "yaks_123.json",
        "xyak_123.json",
        "yak_123.JSON",
    ],
)
def test_pattern_rejects_other_names(name):
    assert ResponsePattern.for_prefix("yak").timestamp_of(name) is None


def test_prefix_with_underscore_does_not_collide():
    list_pattern = ResponsePattern.for_prefix("list_yaks")
    assert list_pattern.timestamp_of("list_yaks_42.json") == 42
    assert ResponsePattern.for_prefix("yak").timestamp_of("list_yaks_42.json") is None


def test_prefix_metacharacters_are_literal():
    pattern = ResponsePattern.for_prefix("yak.abc")
    assert pattern.matches("yak.abc_5.json")
    assert not pattern.matches("yakXabc_5.json")


def test_freshness_window_boundary():
    assert is_fresh(900, 1000, 100)
    assert not is_fresh(899, 1000, 100)
    assert is_fresh(1050, 1000, 100)
    assert not is_fresh(999, 1000, 0)


def test_response_filename_round_trips_through_pattern():
    name = response_filename("list_yaks", 1234)
    assert name == "list_yaks_1234.json"
    assert ResponsePattern.for_prefix("list_yaks").timestamp_of(name) == 1234


def test_response_filename_rejects_negative_time():
    with pytest.raises(ValueError):
        response_filename("yak", -1)


@pytest.mark.parametrize("prefix", ["", "../yak", "yak/x", " yak", "_yak", "yak*"])
def test_invalid_prefixes_rejected(prefix):
    with pytest.raises(ValueError):
        validate_prefix(prefix)


def test_reply_prefix_scopes_to_request():
    prefix = reply_prefix("yak", "0a1b2c3d")
    assert prefix == "yak.0a1b2c3d"
    pattern = ResponsePattern.for_prefix(prefix)
    assert pattern.matches("yak.0a1b2c3d_10.json")
    assert not ResponsePattern.for_prefix("yak").matches("yak.0a1b2c3d_10.json")


def test_embedded_timestamp_ignores_prefix():
    assert embedded_timestamp("anything_77.json") == 77
    assert embedded_timestamp("1700-abcdef.json") is None
