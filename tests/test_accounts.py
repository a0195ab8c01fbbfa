"""Tests for qqbot/accounts.py."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from conftest import APP_ID, SECRET, host_config, make_env
from qqbot.accounts import (
    DEFAULT_ACCOUNT_ID,
    SecretSource,
    apply_account_config,
    describe_account,
    disable_channel,
    is_configured,
    list_account_ids,
    read_secret_file,
    resolve_account,
    resolve_default_account_id,
    validate_account_id,
)
from qqbot.errors import InvalidAccountIdError


def _no_files(path: str) -> None:
    raise AssertionError(f"secret file {path} should not be read")


# ---------------------------------------------------------------------------
# Precedence: inline > env > file
# ---------------------------------------------------------------------------


class TestDefaultAccountPrecedence:
    def test_inline_pair_wins_over_env_and_file(self, tmp_path: Path) -> None:
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file\n")
        cfg = host_config(
            {"appId": "inline-app", "clientSecret": "inline-secret", "clientSecretFile": str(secret_file)}
        )
        env = make_env(app_id="env-app", client_secret="env-secret")

        account = resolve_account(cfg, None, env)

        assert account.account_id == DEFAULT_ACCOUNT_ID
        assert account.app_id == "inline-app"
        assert account.client_secret == "inline-secret"
        assert account.secret_source is SecretSource.INLINE

    def test_env_pair_used_when_no_inline(self) -> None:
        env = make_env(app_id="env-app", client_secret="env-secret")
        account = resolve_account(host_config({}), "default", env, read_secret=_no_files)
        assert (account.app_id, account.client_secret) == ("env-app", "env-secret")
        assert account.secret_source is SecretSource.ENV
        assert account.configured

    def test_env_beats_secret_file(self, tmp_path: Path) -> None:
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file")
        cfg = host_config({"appId": "inline-app", "clientSecretFile": str(secret_file)})
        env = make_env(app_id="env-app", client_secret="env-secret")

        account = resolve_account(cfg, None, env)

        # appId inline, secret from env (env tier is consulted before the file).
        assert account.app_id == "inline-app"
        assert account.client_secret == "env-secret"
        assert account.secret_source is SecretSource.ENV

    def test_secret_file_when_nothing_else(self, tmp_path: Path, empty_env) -> None:
        secret_file = tmp_path / "secret"
        secret_file.write_text("  file-secret \n")
        cfg = host_config({"appId": APP_ID, "clientSecretFile": str(secret_file)})

        account = resolve_account(cfg, None, empty_env)

        assert account.client_secret == "file-secret"
        assert account.secret_source is SecretSource.FILE

    def test_half_env_pair_is_ignored(self) -> None:
        env = make_env(app_id="env-app")
        account = resolve_account(host_config({}), None, env)
        assert not account.configured
        assert account.app_id is None
        assert account.secret_source is SecretSource.NONE

    def test_unreadable_secret_file_means_unconfigured(self, tmp_path: Path, empty_env) -> None:
        cfg = host_config({"appId": APP_ID, "clientSecretFile": str(tmp_path / "missing")})
        account = resolve_account(cfg, None, empty_env)
        assert not account.configured
        assert account.client_secret is None
        assert account.secret_source is SecretSource.NONE

    def test_image_server_from_env(self) -> None:
        env = make_env(image_server_base_url="https://img.example.com")
        cfg = host_config({"appId": APP_ID, "clientSecret": SECRET})
        account = resolve_account(cfg, None, env)
        assert account.image_server_base_url == "https://img.example.com"

    def test_whitespace_values_count_as_missing(self, empty_env) -> None:
        cfg = host_config({"appId": "   ", "clientSecret": SECRET})
        account = resolve_account(cfg, None, empty_env)
        assert not account.configured


class TestNamedAccounts:
    def test_named_account_ignores_env(self) -> None:
        env = make_env(app_id="env-app", client_secret="env-secret")
        cfg = host_config({"accounts": {"bot2": {"name": "second"}}})

        account = resolve_account(cfg, "bot2", env)

        assert account.account_id == "bot2"
        assert account.name == "second"
        assert not account.configured
        assert account.secret_source is SecretSource.NONE

    def test_named_account_inline(self, empty_env) -> None:
        cfg = host_config(
            {
                "appId": "root-app",
                "clientSecret": "root-secret",
                "accounts": {"bot2": {"appId": "a2", "clientSecret": "s2"}},
            }
        )
        account = resolve_account(cfg, "bot2", empty_env)
        assert (account.app_id, account.client_secret) == ("a2", "s2")

    def test_named_account_does_not_inherit_root_credentials(self, empty_env) -> None:
        cfg = host_config({"appId": "root-app", "clientSecret": "root-secret", "accounts": {"bot2": {}}})
        assert not resolve_account(cfg, "bot2", empty_env).configured

    def test_named_account_secret_file(self, tmp_path: Path, empty_env) -> None:
        secret_file = tmp_path / "bot2"
        secret_file.write_text("s2")
        cfg = host_config({"accounts": {"bot2": {"appId": "a2", "clientSecretFile": str(secret_file)}}})
        account = resolve_account(cfg, "bot2", empty_env)
        assert account.client_secret == "s2"
        assert account.secret_source is SecretSource.FILE

    def test_unknown_account_resolves_unconfigured(self, empty_env) -> None:
        account = resolve_account(host_config({}), "nobody", empty_env)
        assert account.account_id == "nobody"
        assert account.enabled is True
        assert not account.configured

    def test_blank_account_id_means_default(self, empty_env) -> None:
        assert resolve_account(host_config({}), "  ", empty_env).account_id == DEFAULT_ACCOUNT_ID


class TestEnabled:
    def test_enabled_by_default(self, empty_env) -> None:
        assert resolve_account(host_config({}), None, empty_env).enabled is True

    def test_account_block_disabled(self, empty_env) -> None:
        cfg = host_config({"accounts": {"bot2": {"enabled": False}}})
        assert resolve_account(cfg, "bot2", empty_env).enabled is False
        assert resolve_account(cfg, None, empty_env).enabled is True

    def test_channel_disabled_disables_every_account(self, empty_env) -> None:
        cfg = host_config({"enabled": False, "accounts": {"bot2": {"enabled": True}}})
        assert resolve_account(cfg, None, empty_env).enabled is False
        assert resolve_account(cfg, "bot2", empty_env).enabled is False


class TestPurity:
    def test_resolution_does_not_mutate_config(self, tmp_path: Path, empty_env) -> None:
        cfg = host_config(
            {"appId": APP_ID, "clientSecret": SECRET, "accounts": {"bot2": {"name": "x"}}},
            other={"keep": True},
        )
        before = copy.deepcopy(cfg)

        resolve_account(cfg, None, empty_env)
        resolve_account(cfg, "bot2", empty_env)
        list_account_ids(cfg, empty_env)

        assert cfg == before

    def test_resolved_config_is_a_copy(self, empty_env) -> None:
        cfg = host_config({"appId": APP_ID, "clientSecret": SECRET, "extra": {"a": 1}})
        account = resolve_account(cfg, None, empty_env)
        account.config["extra"]["a"] = 2
        assert cfg["channels"]["qqbot"]["extra"]["a"] == 1

    def test_missing_channels_section(self, empty_env) -> None:
        for cfg in (None, {}, {"channels": None}, {"channels": {"qqbot": "bogus"}}):
            account = resolve_account(cfg, None, empty_env)
            assert not account.configured


# ---------------------------------------------------------------------------
# Account listing
# ---------------------------------------------------------------------------


class TestListAccountIds:
    def test_empty_config_lists_default(self, empty_env) -> None:
        assert list_account_ids(host_config({}), empty_env) == ["default"]

    def test_named_only(self, empty_env) -> None:
        cfg = host_config({"accounts": {"b": {}, "a": {}}})
        assert list_account_ids(cfg, empty_env) == ["b", "a"]

    def test_root_credentials_put_default_first(self, empty_env) -> None:
        cfg = host_config({"appId": APP_ID, "accounts": {"b": {}}})
        assert list_account_ids(cfg, empty_env) == ["default", "b"]

    def test_env_credentials_put_default_first(self) -> None:
        env = make_env(app_id="x", client_secret="y")
        cfg = host_config({"accounts": {"b": {}}})
        assert list_account_ids(cfg, env) == ["default", "b"]

    def test_reserved_default_key_in_accounts_map_skipped(self, empty_env) -> None:
        cfg = host_config({"accounts": {"b": {}, "default": {"appId": "x", "clientSecret": "y"}}})
        assert list_account_ids(cfg, empty_env) == ["b"]
        cfg["channels"]["qqbot"]["appId"] = APP_ID
        assert list_account_ids(cfg, empty_env) == ["default", "b"]

    def test_default_account_id_follows_listing(self, empty_env) -> None:
        assert resolve_default_account_id(host_config({"accounts": {"b": {}}}), empty_env) == "b"
        assert resolve_default_account_id(host_config({}), empty_env) == "default"


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------


class TestApplyAccountConfig:
    def test_default_writes_to_root(self) -> None:
        cfg = host_config({"name": "old"}, other={"keep": 1})
        result = apply_account_config(cfg, None, {"appId": "a", "clientSecret": "s"})
        section = result["channels"]["qqbot"]
        assert section == {"name": "old", "appId": "a", "clientSecret": "s"}
        assert result["other"] == {"keep": 1}

    def test_named_writes_to_accounts(self) -> None:
        cfg = host_config({"appId": "root", "accounts": {"bot2": {"name": "n"}, "bot3": {}}})
        result = apply_account_config(cfg, "bot2", {"appId": "a2"})
        section = result["channels"]["qqbot"]
        assert section["appId"] == "root"
        assert section["accounts"]["bot2"] == {"name": "n", "appId": "a2"}
        assert section["accounts"]["bot3"] == {}

    def test_none_values_are_not_written(self) -> None:
        cfg = host_config({"clientSecret": "keep-me"})
        result = apply_account_config(cfg, None, {"clientSecret": None, "name": "bot"})
        assert result["channels"]["qqbot"]["clientSecret"] == "keep-me"
        assert result["channels"]["qqbot"]["name"] == "bot"

    def test_idempotent(self) -> None:
        patch = {"appId": "a", "clientSecret": "s", "enabled": True}
        once = apply_account_config(host_config({}), "bot2", patch)
        twice = apply_account_config(once, "bot2", patch)
        assert once == twice

    def test_input_not_mutated(self) -> None:
        cfg = host_config({"accounts": {"bot2": {}}})
        before = copy.deepcopy(cfg)
        apply_account_config(cfg, "bot2", {"appId": "a"})
        assert cfg == before

    def test_creates_missing_sections(self) -> None:
        result = apply_account_config(None, "bot2", {"appId": "a"})
        assert result == {"channels": {"qqbot": {"accounts": {"bot2": {"appId": "a"}}}}}

    def test_applied_credentials_resolve(self, empty_env) -> None:
        cfg = apply_account_config({}, None, {"appId": APP_ID, "clientSecret": SECRET})
        account = resolve_account(cfg, None, empty_env)
        assert account.configured
        assert account.secret_source is SecretSource.INLINE

    def test_disable_channel_keeps_credentials(self, empty_env) -> None:
        cfg = host_config({"appId": APP_ID, "clientSecret": SECRET})
        result = disable_channel(cfg)
        assert result["channels"]["qqbot"]["enabled"] is False
        account = resolve_account(result, None, empty_env)
        assert account.configured
        assert account.enabled is False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_read_secret_file_trims(self, tmp_path: Path) -> None:
        path = tmp_path / "s"
        path.write_text("\n  abc  \n")
        assert read_secret_file(str(path)) == "abc"

    def test_read_secret_file_empty_or_missing(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty"
        empty.write_text("   \n")
        assert read_secret_file(str(empty)) is None
        assert read_secret_file(str(tmp_path / "nope")) is None

    @pytest.mark.parametrize("raw", ["default", "bot_2", "a-b", "X" * 64])
    def test_valid_account_ids(self, raw: str) -> None:
        assert validate_account_id(raw) == raw

    @pytest.mark.parametrize("raw", ["", "has space", "a.b", "X" * 65, None, 3])
    def test_invalid_account_ids(self, raw: object) -> None:
        with pytest.raises(InvalidAccountIdError):
            validate_account_id(raw)

    def test_describe_account_hides_secret(self, empty_env) -> None:
        cfg = host_config({"appId": APP_ID, "clientSecret": SECRET, "name": "main"})
        summary = describe_account(resolve_account(cfg, None, empty_env))
        assert summary == {
            "accountId": "default",
            "name": "main",
            "enabled": True,
            "configured": True,
            "tokenSource": "inline",
        }
        assert SECRET not in repr(resolve_account(cfg, None, empty_env))

    def test_describe_missing_account(self) -> None:
        summary = describe_account(None)
        assert summary["accountId"] == "default"
        assert summary["configured"] is False
        assert is_configured(None) is False
