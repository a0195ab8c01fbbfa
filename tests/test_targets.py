"""Tests for qqbot/targets.py."""

from __future__ import annotations

import pytest

from conftest import OPENID
from qqbot.errors import MalformedTargetError, QQBotError
from qqbot.targets import Surface, Target, looks_like_id, normalize_target, parse_target


class TestParseTarget:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("c2c:U1", Target(Surface.C2C, "U1")),
            ("group:G1", Target(Surface.GROUP, "G1")),
            ("channel:C1", Target(Surface.CHANNEL, "C1")),
            ("qqbot:group:G1", Target(Surface.GROUP, "G1")),
            ("QQBot:c2c:U1", Target(Surface.C2C, "U1")),
            (OPENID, Target(Surface.C2C, OPENID)),
            (OPENID.lower(), Target(Surface.C2C, OPENID.lower())),
            ("  group:G1  ", Target(Surface.GROUP, "G1")),
        ],
    )
    def test_recognised_forms(self, raw: str, expected: Target) -> None:
        assert parse_target(raw) == expected
        assert parse_target(raw, strict=True) == expected

    def test_permissive_fallback_is_direct_message(self) -> None:
        assert parse_target("someone") == Target(Surface.C2C, "someone")

    def test_strict_rejects_unknown_form(self) -> None:
        with pytest.raises(MalformedTargetError):
            parse_target("someone", strict=True)

    @pytest.mark.parametrize("raw", ["", "   ", "qqbot:", "c2c:", "group:", "channel:"])
    def test_empty_is_malformed(self, raw: str) -> None:
        with pytest.raises(MalformedTargetError):
            parse_target(raw)

    @pytest.mark.parametrize("raw", ["c2c:a b", "group:x\ty", "two words"])
    def test_whitespace_in_id_is_malformed(self, raw: str) -> None:
        with pytest.raises(MalformedTargetError):
            parse_target(raw)

    def test_non_string(self) -> None:
        with pytest.raises(MalformedTargetError):
            parse_target(None)  # type: ignore[arg-type]

    def test_error_is_in_taxonomy(self) -> None:
        with pytest.raises(QQBotError) as excinfo:
            parse_target("c2c:")
        assert excinfo.value.reason == "missing id"
        assert isinstance(excinfo.value, ValueError)

    def test_target_renders_back_to_address(self) -> None:
        target = parse_target("qqbot:group:G1")
        assert str(target) == "group:G1"
        assert parse_target(str(target)) == target


class TestLooksLikeId:
    @pytest.mark.parametrize(
        "raw",
        ["c2c:x", "group:x", "channel:x", "qqbot:c2c:x", OPENID],
    )
    def test_accepts_strict_forms(self, raw: str) -> None:
        assert looks_like_id(raw) is True

    @pytest.mark.parametrize("raw", ["", "someone", "c2c:", "ABC123", "user:x"])
    def test_rejects_everything_else(self, raw: str) -> None:
        assert looks_like_id(raw) is False

    @pytest.mark.parametrize("raw", ["c2c:x", "someone", "", OPENID, "group:", "qqbot:channel:9"])
    def test_agrees_with_strict_parse(self, raw: str) -> None:
        try:
            parse_target(raw, strict=True)
            parsed = True
        except MalformedTargetError:
            parsed = False
        assert looks_like_id(raw) is parsed


class TestNormalizeTarget:
    def test_strips_channel_prefix(self) -> None:
        assert normalize_target("qqbot:c2c:x") == "c2c:x"
        assert normalize_target("QQBOT:group:g") == "group:g"

    def test_leaves_other_strings(self) -> None:
        assert normalize_target("c2c:x") == "c2c:x"
        assert normalize_target("qq:c2c:x") == "qq:c2c:x"
