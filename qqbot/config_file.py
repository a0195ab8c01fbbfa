"""TOML host-configuration file utilities.

The CLI stands in for a host: it keeps the host config (the mapping whose
``channels.qqbot`` section the account registry reads) in a TOML file.

Reading: uses tomllib (stdlib, Python >=3.11)
Writing: uses tomli-w
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "qqbot.toml"


def default_config_path() -> Path:
    return Path.home() / ".config" / "qqbot" / CONFIG_FILENAME


def find_config() -> Path | None:
    """Search for qqbot.toml in standard locations.

    Search order:
    1. Current working directory
    2. ~/.config/qqbot/qqbot.toml

    Returns None if not found.
    """
    cwd = Path.cwd() / CONFIG_FILENAME
    if cwd.is_file():
        return cwd

    xdg = default_config_path()
    if xdg.is_file():
        return xdg

    return None


def load_config(path: Path | None) -> dict[str, Any]:
    """Load a qqbot.toml file; a missing file is an empty host config."""
    import tomllib

    if path is None or not path.is_file():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _drop_none(value: Any) -> Any:
    # TOML has no null.
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value if v is not None]
    return value


def write_config(path: Path, data: dict[str, Any]) -> None:
    """Atomic write with tempfile + rename.

    Creates parent directories if needed. The file may hold client secrets,
    so it is created owner-readable only.
    """
    import tomli_w

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=".qqbot_config_"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            tomli_w.dump(_drop_none(data), f)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def generate_template() -> str:
    """Annotated qqbot.toml template with every key commented out."""
    return '''\
# QQ Bot channel configuration
# Credentials for the default account may also come from QQBOT_APP_ID and
# QQBOT_CLIENT_SECRET. Transport tuning lives in QQBOT_* environment variables.

[channels.qqbot]
# enabled = true
# name = "main bot"
# appId = ""
# clientSecret = ""
# appIdFile = "~/.secrets/qqbot_app_id"
# clientSecretFile = "~/.secrets/qqbot_secret"
# imageServerBaseUrl = "https://img.example.com"

# [channels.qqbot.accounts.support]
# appId = ""
# clientSecret = ""
'''
